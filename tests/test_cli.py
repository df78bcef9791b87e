from __future__ import annotations

from pathlib import Path

import pytest

from asin_importer.api.types import Credentials, StaticCredentialSource
from asin_importer.errors import AuthError
from asin_importer.orchestration.cli import build_arg_parser, build_components, resolve_credentials


SECRET = "0123456789abcdefghijklmnopqrstuvwxyz"


def test_credentials_fall_back_to_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PAAPI_ACCESS_KEY", "AKIAENVIRONMENT01")
    monkeypatch.setenv("PAAPI_SECRET_KEY", SECRET)
    monkeypatch.setenv("PAAPI_PARTNER_TAG", "env-21")
    monkeypatch.setenv("PAAPI_MARKETPLACE", "www.amazon.de")

    args = build_arg_parser().parse_args(["--partner-tag", "cli-21", "status"])
    credentials = resolve_credentials(args)

    assert credentials.access_key == "AKIAENVIRONMENT01"
    assert credentials.partner_tag == "cli-21"
    assert credentials.marketplace == "www.amazon.de"


def test_build_components_wires_marketplace_and_sync_source(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PAAPI_MARKETPLACE", raising=False)
    args = build_arg_parser().parse_args(
        [
            "--access-key",
            "AKIAEXAMPLE000001",
            "--secret-key",
            SECRET,
            "--partner-tag",
            "tag-21",
            "--marketplace",
            "amazon.co.jp",
            "--state-db",
            str(tmp_path / "state.sqlite"),
            "serve",
            "--sync-catalog",
        ]
    )
    components = build_components(args)

    assert components.client.marketplace.region == "ap-northeast-1"
    assert components.importer.mapper.default_currency == "JPY"
    assert components.orchestrator.scheduled_source == components.catalog.item_codes
    assert components.cache.config.enabled


def test_build_components_rejects_short_secret(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("PAAPI_ACCESS_KEY", "PAAPI_SECRET_KEY", "PAAPI_PARTNER_TAG"):
        monkeypatch.delenv(name, raising=False)
    args = build_arg_parser().parse_args(
        [
            "--access-key",
            "AKIAEXAMPLE000001",
            "--secret-key",
            "short",
            "--partner-tag",
            "tag-21",
            "--state-db",
            str(tmp_path / "state.sqlite"),
            "status",
        ]
    )
    with pytest.raises(AuthError):
        build_components(args)


def test_import_command_accepts_codes_and_csv() -> None:
    args = build_arg_parser().parse_args(["import", "B000000001", "--csv", "a.csv", "--csv", "b.txt", "--force-update"])
    assert args.codes == ["B000000001"]
    assert args.csv == ["a.csv", "b.txt"]
    assert args.force_update is True


def test_credentials_fall_back_to_given_source() -> None:
    source = StaticCredentialSource(
        Credentials(
            access_key="AKIASTATICSOURCE1",
            secret_key=SECRET,
            partner_tag="static-21",
            marketplace="www.amazon.co.uk",
        )
    )
    args = build_arg_parser().parse_args(["--marketplace", "www.amazon.fr", "categories", "172282", "493964"])

    credentials = resolve_credentials(args, source)

    assert credentials.access_key == "AKIASTATICSOURCE1"
    assert credentials.partner_tag == "static-21"
    assert credentials.marketplace == "www.amazon.fr"
    assert args.node_ids == ["172282", "493964"]
