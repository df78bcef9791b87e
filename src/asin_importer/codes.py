from __future__ import annotations

import csv
import logging
import re
from pathlib import Path
from typing import Any, Iterable

from .errors import ValidationError


LOGGER = logging.getLogger(__name__)

ITEM_CODE_RE = re.compile(r"^[A-Z0-9]{10}$")
MAX_CODE_FILE_BYTES = 5 * 1024 * 1024
CODE_FILE_SUFFIXES = {".csv", ".txt"}

_LIST_SPLIT_RE = re.compile(r"[\s,;]+")
_DATA_ATTR_RE = re.compile(r"data-asin\s*=\s*[\"']([A-Za-z0-9]{10})[\"']")
_URL_SEGMENT_RE = re.compile(r"/(?:dp|gp/product|gp/aw/d)/([A-Za-z0-9]{10})(?=[/?#\"'\s]|$)")


def normalize_code(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().upper()


def is_valid_code(value: Any) -> bool:
    return bool(ITEM_CODE_RE.match(normalize_code(value)))


def validate_code(value: Any) -> str:
    code = normalize_code(value)
    if not ITEM_CODE_RE.match(code):
        raise ValidationError(f"Invalid item code: {value!r}")
    return code


def dedupe_codes(codes: Iterable[Any]) -> list[str]:
    """Validate every code and drop repeats, keeping first-seen order."""
    return list(dict.fromkeys(validate_code(code) for code in codes))


def parse_code_list(text: str) -> list[str]:
    """Lenient variant for pasted input: invalid tokens are skipped."""
    tokens = (normalize_code(token) for token in _LIST_SPLIT_RE.split(text or ""))
    return list(dict.fromkeys(token for token in tokens if ITEM_CODE_RE.match(token)))


def extract_codes_from_text(text: str) -> list[str]:
    """Find codes in product page markup or pasted URLs."""
    found: list[str] = []
    for pattern in (_DATA_ATTR_RE, _URL_SEGMENT_RE):
        found.extend(match.upper() for match in pattern.findall(text or ""))
    return list(dict.fromkeys(found))


def extract_codes_from_csv(path: str | Path) -> list[str]:
    file_path = Path(path).expanduser()
    if file_path.suffix.lower() not in CODE_FILE_SUFFIXES:
        raise ValidationError(f"Unsupported code file type: {file_path.suffix or '<none>'}")
    if not file_path.is_file():
        raise ValidationError(f"Code file not found: {file_path}")
    if file_path.stat().st_size > MAX_CODE_FILE_BYTES:
        raise ValidationError(f"Code file exceeds {MAX_CODE_FILE_BYTES} bytes: {file_path}")

    codes: list[str] = []
    header_checked = False
    with file_path.open("r", encoding="utf-8-sig", newline="") as stream:
        for row in csv.reader(stream):
            cells = [normalize_code(cell) for cell in row if cell and cell.strip()]
            if not cells:
                continue
            code = next((cell for cell in cells if ITEM_CODE_RE.match(cell)), None)
            if not header_checked:
                header_checked = True
                if code is None:
                    LOGGER.debug("Skipping header row in %s: %s", file_path, row)
                    continue
            if code is not None:
                codes.append(code)

    unique = list(dict.fromkeys(codes))
    LOGGER.info("Extracted item codes from file=%s total=%s unique=%s", file_path, len(codes), len(unique))
    return unique
