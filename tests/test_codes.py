from __future__ import annotations

from pathlib import Path

import pytest

from asin_importer.codes import (
    dedupe_codes,
    extract_codes_from_csv,
    extract_codes_from_text,
    is_valid_code,
    parse_code_list,
    validate_code,
)
from asin_importer.errors import ValidationError


def test_validate_code_normalizes_case_and_whitespace() -> None:
    assert validate_code("  b07xyz1234 ") == "B07XYZ1234"


@pytest.mark.parametrize("value", ["", "B07XYZ123", "B07XYZ12345", "B07-YZ1234", None, 1234567890])
def test_validate_code_rejects_malformed(value: object) -> None:
    assert not is_valid_code(value)
    with pytest.raises(ValidationError):
        validate_code(value)


def test_dedupe_codes_keeps_first_seen_order() -> None:
    assert dedupe_codes(["B000000002", "b000000001", "B000000002"]) == ["B000000002", "B000000001"]


def test_dedupe_codes_raises_on_invalid_entry() -> None:
    with pytest.raises(ValidationError):
        dedupe_codes(["B000000001", "nope"])


def test_parse_code_list_skips_invalid_tokens() -> None:
    text = "B000000001, b000000002\nbad-token;B000000001  0123456789"
    assert parse_code_list(text) == ["B000000001", "B000000002", "0123456789"]


def test_extract_codes_from_text_reads_attributes_and_urls() -> None:
    text = (
        '<div data-asin="B00AAAAAA1"></div>'
        '<a href="https://www.amazon.com/dp/B00AAAAAA2?ref=x">x</a>'
        '<a href="/gp/product/b00aaaaaa3/">y</a>'
        '<div data-asin="B00AAAAAA1"></div>'
    )
    assert extract_codes_from_text(text) == ["B00AAAAAA1", "B00AAAAAA2", "B00AAAAAA3"]


def test_extract_codes_from_csv_skips_header_and_takes_first_valid_code(tmp_path: Path) -> None:
    path = tmp_path / "codes.csv"
    path.write_text(
        "asin,title\n"
        "B000000001,First\n"
        "\n"
        "note,B000000002\n"
        "B000000001,Duplicate\n",
        encoding="utf-8",
    )
    assert extract_codes_from_csv(path) == ["B000000001", "B000000002"]


def test_extract_codes_from_csv_rejects_other_extensions(tmp_path: Path) -> None:
    path = tmp_path / "codes.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValidationError):
        extract_codes_from_csv(path)
