from __future__ import annotations

from datetime import datetime, timezone

from asin_importer.api.signing import RequestSigner
from asin_importer.api.types import Credentials


NOW = datetime(2026, 3, 1, 12, 30, 45, tzinfo=timezone.utc)
HEADERS = {
    "content-encoding": "amz-1.0",
    "content-type": "application/json; charset=utf-8",
    "host": "webservices.amazon.com",
    "x-amz-target": "com.amazon.paapi5.v1.ProductAdvertisingAPIv1.GetItems",
}
BODY = '{"ItemIds":["B000000001"],"PartnerTag":"tag-20"}'


def _signer(secret: str = "secret-key-0123456789-abcdefghijkl") -> RequestSigner:
    credentials = Credentials(access_key="AKIAEXAMPLE12345", secret_key=secret, partner_tag="tag-20")
    return RequestSigner(credentials, region="us-east-1")


def test_signature_is_deterministic_for_same_inputs() -> None:
    first = _signer().sign("POST", "/paapi5/getitems", HEADERS, BODY, now=NOW)
    second = _signer().sign("POST", "/paapi5/getitems", dict(reversed(list(HEADERS.items()))), BODY, now=NOW)
    assert first.signature == second.signature
    assert first.headers["Authorization"] == second.headers["Authorization"]


def test_signature_changes_with_header_body_secret_or_time() -> None:
    base = _signer().sign("POST", "/paapi5/getitems", HEADERS, BODY, now=NOW).signature

    changed_header = dict(HEADERS, **{"x-amz-target": "com.amazon.paapi5.v1.ProductAdvertisingAPIv1.SearchItems"})
    assert _signer().sign("POST", "/paapi5/getitems", changed_header, BODY, now=NOW).signature != base
    assert _signer().sign("POST", "/paapi5/getitems", HEADERS, BODY + " ", now=NOW).signature != base
    assert _signer("another-secret-0123456789-abcdefgh").sign(
        "POST", "/paapi5/getitems", HEADERS, BODY, now=NOW
    ).signature != base
    later = NOW.replace(second=46)
    assert _signer().sign("POST", "/paapi5/getitems", HEADERS, BODY, now=later).signature != base


def test_authorization_header_layout() -> None:
    signed = _signer().sign("POST", "/paapi5/getitems", HEADERS, BODY, now=NOW)
    assert signed.headers["x-amz-date"] == "20260301T123045Z"
    assert signed.headers["Authorization"] == (
        "AWS4-HMAC-SHA256 Credential=AKIAEXAMPLE12345/20260301/us-east-1/ProductAdvertisingAPI/aws4_request, "
        "SignedHeaders=content-encoding;content-type;host;x-amz-date;x-amz-target, "
        f"Signature={signed.signature}"
    )
    assert len(signed.signature) == 64


def test_canonical_request_sorts_headers_and_query() -> None:
    signed = _signer().sign(
        "post",
        "/paapi5/getitems",
        {"Host": "webservices.amazon.com", "Content-Type": "application/json"},
        "",
        now=NOW,
        query={"b": "2", "a": "x y"},
    )
    lines = signed.canonical_request.split("\n")
    assert lines[0] == "POST"
    assert lines[1] == "/paapi5/getitems"
    assert lines[2] == "a=x%20y&b=2"
    assert lines[3:6] == [
        "content-type:application/json",
        "host:webservices.amazon.com",
        "x-amz-date:20260301T123045Z",
    ]
    # sha256 of the empty payload
    assert lines[-1] == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
