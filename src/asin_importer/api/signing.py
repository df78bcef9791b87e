from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping
from urllib.parse import quote

from .types import SERVICE_NAME, Credentials


ALGORITHM = "AWS4-HMAC-SHA256"
TERMINATOR = "aws4_request"
_UNRESERVED = "-_.~"


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _sha256_hex(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


@dataclass(frozen=True, slots=True)
class SignedRequest:
    headers: dict[str, str]
    canonical_request: str
    string_to_sign: str
    signature: str


class RequestSigner:
    """AWS Signature V4 for the product advertising endpoint.

    Signing is a pure function of the credentials, region, request parts and
    the timestamp; the same inputs always yield the same signature.
    """

    def __init__(self, credentials: Credentials, *, region: str, service: str = SERVICE_NAME):
        self.credentials = credentials
        self.region = region
        self.service = service

    @staticmethod
    def canonical_query(query: Mapping[str, str] | None) -> str:
        if not query:
            return ""
        pairs = sorted((quote(str(k), safe=_UNRESERVED), quote(str(v), safe=_UNRESERVED)) for k, v in query.items())
        return "&".join(f"{key}={value}" for key, value in pairs)

    @staticmethod
    def canonical_headers(headers: Mapping[str, str]) -> tuple[str, str]:
        normalized = {name.strip().lower(): " ".join(str(value).split()) for name, value in headers.items()}
        names = sorted(normalized)
        block = "".join(f"{name}:{normalized[name]}\n" for name in names)
        return block, ";".join(names)

    def signing_key(self, date_stamp: str) -> bytes:
        k_date = _hmac(f"AWS4{self.credentials.secret_key}".encode("utf-8"), date_stamp)
        k_region = _hmac(k_date, self.region)
        k_service = _hmac(k_region, self.service)
        return _hmac(k_service, TERMINATOR)

    def sign(
        self,
        method: str,
        path: str,
        headers: Mapping[str, str],
        payload: bytes | str,
        *,
        now: datetime,
        query: Mapping[str, str] | None = None,
    ) -> SignedRequest:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        now = now.astimezone(timezone.utc)
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = now.strftime("%Y%m%d")
        body = payload.encode("utf-8") if isinstance(payload, str) else payload

        request_headers = {name: value for name, value in headers.items() if name.lower() != "x-amz-date"}
        request_headers["x-amz-date"] = amz_date
        header_block, signed_headers = self.canonical_headers(request_headers)

        canonical_request = "\n".join(
            [
                method.upper(),
                quote(path or "/", safe="/" + _UNRESERVED),
                self.canonical_query(query),
                header_block,
                signed_headers,
                _sha256_hex(body),
            ]
        )
        scope = f"{date_stamp}/{self.region}/{self.service}/{TERMINATOR}"
        string_to_sign = "\n".join(
            [ALGORITHM, amz_date, scope, _sha256_hex(canonical_request.encode("utf-8"))]
        )
        signature = hmac.new(
            self.signing_key(date_stamp),
            string_to_sign.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        request_headers["Authorization"] = (
            f"{ALGORITHM} Credential={self.credentials.access_key}/{scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )
        return SignedRequest(
            headers=request_headers,
            canonical_request=canonical_request,
            string_to_sign=string_to_sign,
            signature=signature,
        )
