from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

import httpx

from ..codes import dedupe_codes, validate_code
from ..errors import (
    AuthError,
    ExhaustedRetriesError,
    ImporterError,
    NotFoundError,
    RequestAbortedError,
    ThrottleError,
    TransientNetworkError,
    ValidationError,
)
from ..storage.cache import GROUP_API_RESPONSES, Cache
from .signing import RequestSigner
from .types import (
    BROWSE_NODE_RESOURCES,
    ITEM_RESOURCES,
    MARKETPLACES,
    MAX_SEARCH_PAGES,
    OPERATIONS,
    PARTNER_TYPE,
    SEARCH_RESOURCES,
    VARIATION_RESOURCES,
    ApiClientConfig,
    ChunkFailure,
    Credentials,
    ItemsResult,
    Marketplace,
    Operation,
    resolve_marketplace,
)


LOGGER = logging.getLogger(__name__)

AbortCheck = Callable[[], bool]

THROTTLE_CODES = {"TooManyRequests", "RequestThrottled", "Throttling"}
AUTH_CODES = {
    "AccessDenied",
    "AccessDeniedAwsUsers",
    "IncompleteSignature",
    "InvalidAssociate",
    "InvalidPartnerTag",
    "InvalidSignature",
    "RequestExpired",
    "SignatureDoesNotMatch",
    "UnrecognizedClient",
}
NOT_FOUND_CODES = {"ItemNotAccessible", "ItemsNotFound", "NoResults"}
TRANSIENT_CODES = {"InternalError", "InternalFailure", "ServiceUnavailable"}
RESULT_SECTIONS = ("ItemsResult", "SearchResult", "VariationsResult", "BrowseNodesResult")

SEARCH_FILTER_FIELDS: Mapping[str, str] = {
    "availability": "Availability",
    "brand": "Brand",
    "browse_node_id": "BrowseNodeId",
    "condition": "Condition",
    "max_price": "MaxPrice",
    "merchant": "Merchant",
    "min_price": "MinPrice",
    "min_reviews_rating": "MinReviewsRating",
    "min_saving_percent": "MinSavingPercent",
    "sort_by": "SortBy",
}


def _chunked(values: Sequence[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


def _first_error(data: Any) -> tuple[str | None, str]:
    if not isinstance(data, dict):
        return None, ""
    errors = data.get("Errors")
    if not isinstance(errors, list) or not errors or not isinstance(errors[0], dict):
        return None, ""
    first = errors[0]
    code = first.get("Code")
    return (code if isinstance(code, str) else None), str(first.get("Message") or "")


def error_for_code(code: str | None, message: str, *, status: int | None = None) -> ImporterError:
    text = message or f"Vendor error {code or status}"
    if status == 429 or code in THROTTLE_CODES:
        return ThrottleError(text, code=code)
    if code in TRANSIENT_CODES or (status is not None and status >= 500):
        return TransientNetworkError(text, code=code)
    if status in {401, 403} or code in AUTH_CODES:
        return AuthError(text, code=code)
    if status == 404 or code in NOT_FOUND_CODES:
        return NotFoundError(text, code=code)
    return ValidationError(text, code=code)


class ProductApiClient:
    """Signed, rate-limited, retrying client for the product advertising API."""

    def __init__(
        self,
        credentials: Credentials,
        *,
        config: ApiClientConfig | None = None,
        cache: Cache | None = None,
        marketplaces: Mapping[str, Marketplace] = MARKETPLACES,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.credentials = credentials.validate(strict=False)
        self.config = config or ApiClientConfig()
        self.cache = cache
        self.marketplace = resolve_marketplace(credentials.marketplace, marketplaces)
        self._signer = RequestSigner(credentials, region=self.marketplace.region)
        self._http = http_client
        self._owns_http = http_client is None
        self._clock = clock
        self._sleep = sleep
        self._now = now
        self._rate_lock = asyncio.Lock()
        self._last_request_at: float | None = None

    async def __aenter__(self) -> "ProductApiClient":
        self._require_http()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _require_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.config.timeout_sec,
                headers={"user-agent": self.config.user_agent},
            )
            self._owns_http = True
        return self._http

    def _backoff_delay(self, attempt: int) -> float:
        delay = self.config.backoff_base_sec * (2 ** (attempt - 1))
        return min(delay, self.config.backoff_max_sec)

    async def _wait_rate_limit(self) -> None:
        if self.config.requests_per_second <= 0:
            return
        interval = 1.0 / self.config.requests_per_second
        async with self._rate_lock:
            if self._last_request_at is not None:
                wait = self._last_request_at + interval - self._clock()
                if wait > 0:
                    await self._sleep(wait)
            self._last_request_at = self._clock()

    async def _backoff_sleep(self, delay: float, abort: AbortCheck | None) -> None:
        if abort is None:
            await self._sleep(delay)
            return
        remaining = delay
        step = max(0.001, self.config.abort_poll_interval_sec)
        while remaining > 0:
            if abort():
                raise RequestAbortedError("Backoff wait interrupted by cancellation.")
            chunk = min(step, remaining)
            await self._sleep(chunk)
            remaining -= chunk
        if abort():
            raise RequestAbortedError("Backoff wait interrupted by cancellation.")

    def _base_payload(self) -> dict[str, Any]:
        return {
            "PartnerTag": self.credentials.partner_tag,
            "PartnerType": PARTNER_TYPE,
            "Marketplace": self.marketplace.domain,
        }

    async def _send(self, operation: Operation, payload: dict[str, Any]) -> dict[str, Any]:
        await self._wait_rate_limit()
        body = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        headers = {
            "content-encoding": "amz-1.0",
            "content-type": "application/json; charset=utf-8",
            "host": self.marketplace.host,
            "x-amz-target": operation.target,
        }
        signed = self._signer.sign("POST", operation.path, headers, body, now=self._now())
        url = f"https://{self.marketplace.host}{operation.path}"
        try:
            response = await self._require_http().post(
                url,
                content=body.encode("utf-8"),
                headers=signed.headers,
            )
        except httpx.TimeoutException as exc:
            raise TransientNetworkError(f"{operation.name} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkError(f"{operation.name} transport error: {exc}") from exc
        return self._classify(operation, response)

    @staticmethod
    def _classify(operation: Operation, response: httpx.Response) -> dict[str, Any]:
        status = response.status_code
        try:
            data = response.json()
        except ValueError:
            data = None
        code, message = _first_error(data)

        if 200 <= status < 300:
            if not isinstance(data, dict):
                raise TransientNetworkError(f"{operation.name} returned a non-JSON body (status={status}).")
            if code is not None and not any(section in data for section in RESULT_SECTIONS):
                raise error_for_code(code, message, status=None)
            return data

        LOGGER.debug("Vendor error: op=%s status=%s code=%s message=%s", operation.name, status, code, message)
        raise error_for_code(code, message or f"{operation.name} failed with HTTP {status}", status=status)

    async def _execute(
        self,
        operation: Operation,
        payload: dict[str, Any],
        *,
        abort: AbortCheck | None,
    ) -> dict[str, Any]:
        max_attempts = max(1, self.config.max_attempts)
        throttle_attempts = 0
        transient_attempts = 0
        while True:
            try:
                return await self._send(operation, payload)
            except ThrottleError as exc:
                throttle_attempts += 1
                attempt, last_error = throttle_attempts, exc
            except TransientNetworkError as exc:
                transient_attempts += 1
                attempt, last_error = transient_attempts, exc

            if attempt >= max_attempts:
                raise ExhaustedRetriesError(cause=last_error)
            delay = self._backoff_delay(attempt)
            LOGGER.warning(
                "Retrying operation %s after %s error (%s/%s): %s. Sleep %.1fs",
                operation.name,
                last_error.kind,
                attempt,
                max_attempts,
                last_error.message,
                delay,
            )
            await self._backoff_sleep(delay, abort)

    async def _call(
        self,
        operation_name: str,
        params: dict[str, Any],
        *,
        abort: AbortCheck | None = None,
        force_refresh: bool = False,
    ) -> dict[str, Any]:
        operation = OPERATIONS[operation_name]
        cache_key = (operation.name, self.marketplace.domain, params)
        if self.cache is not None and not force_refresh:
            cached = self.cache.get(cache_key, GROUP_API_RESPONSES)
            if cached is not None:
                LOGGER.debug("API cache hit: op=%s", operation.name)
                return cached

        payload = params | self._base_payload()
        data = await self._execute(operation, payload, abort=abort)
        if self.cache is not None:
            self.cache.set(cache_key, data, GROUP_API_RESPONSES, operation.cache_ttl_sec)
        return data

    async def fetch_items(
        self,
        codes: Sequence[str],
        resources: Sequence[str] | None = None,
        *,
        abort: AbortCheck | None = None,
        force_refresh: bool = False,
    ) -> ItemsResult:
        normalized = dedupe_codes(codes)
        if not normalized:
            raise ValidationError("At least one item code is required.")

        chunks = list(_chunked(normalized, max(1, self.config.items_per_request)))
        by_code: dict[str, dict[str, Any]] = {}
        result = ItemsResult()
        for chunk in chunks:
            try:
                data = await self._call(
                    "GetItems",
                    {
                        "ItemIds": chunk,
                        "ItemIdType": "ASIN",
                        "Resources": list(resources or ITEM_RESOURCES),
                    },
                    abort=abort,
                    force_refresh=force_refresh,
                )
            except RequestAbortedError:
                raise
            except ImporterError as exc:
                LOGGER.warning("GetItems chunk failed: codes=%s error=%s", ",".join(chunk), exc.message)
                result.failures.append(ChunkFailure(codes=chunk, error=exc))
                continue
            for item in (data.get("ItemsResult") or {}).get("Items") or []:
                code = item.get("ASIN") if isinstance(item, dict) else None
                if isinstance(code, str):
                    by_code[code.upper()] = item
            result.errors.extend(error for error in data.get("Errors") or [] if isinstance(error, dict))

        if result.failures and len(result.failures) == len(chunks):
            raise result.failures[-1].error
        result.items = [by_code[code] for code in normalized if code in by_code]
        return result

    @staticmethod
    def _search_filters(filters: Mapping[str, Any] | None) -> dict[str, Any]:
        prepared: dict[str, Any] = {}
        allowed = set(SEARCH_FILTER_FIELDS.values())
        for key, value in (filters or {}).items():
            if value in (None, ""):
                continue
            field_name = SEARCH_FILTER_FIELDS.get(key, key)
            if field_name not in allowed:
                raise ValidationError(f"Unsupported search filter: {key}")
            prepared[field_name] = value
        return prepared

    async def search_items(
        self,
        keywords: str,
        search_index: str = "All",
        resources: Sequence[str] | None = None,
        page: int = 1,
        *,
        item_count: int = 10,
        filters: Mapping[str, Any] | None = None,
        abort: AbortCheck | None = None,
    ) -> dict[str, Any]:
        keywords = (keywords or "").strip()
        if not keywords:
            raise ValidationError("Search keywords are required.")
        if not 1 <= page <= MAX_SEARCH_PAGES:
            raise ValidationError(f"Search page must be between 1 and {MAX_SEARCH_PAGES}.")
        params = {
            "Keywords": keywords,
            "SearchIndex": search_index or "All",
            "ItemCount": max(1, min(self.config.items_per_request, int(item_count))),
            "ItemPage": int(page),
            "Resources": list(resources or SEARCH_RESOURCES),
        } | self._search_filters(filters)
        return await self._call("SearchItems", params, abort=abort)

    async def fetch_variations(
        self,
        parent_code: str,
        resources: Sequence[str] | None = None,
        *,
        abort: AbortCheck | None = None,
        force_refresh: bool = False,
    ) -> dict[str, Any]:
        code = validate_code(parent_code)
        items: list[dict[str, Any]] = []
        summary: dict[str, Any] = {}
        page = 1
        while True:
            data = await self._call(
                "GetVariations",
                {
                    "ASIN": code,
                    "VariationCount": self.config.items_per_request,
                    "VariationPage": page,
                    "Resources": list(resources or VARIATION_RESOURCES),
                },
                abort=abort,
                force_refresh=force_refresh,
            )
            section = data.get("VariationsResult") or {}
            items.extend(item for item in section.get("Items") or [] if isinstance(item, dict))
            if not summary and isinstance(section.get("VariationSummary"), dict):
                summary = section["VariationSummary"]
            try:
                page_count = int(summary.get("PageCount") or 1)
            except (TypeError, ValueError):
                page_count = 1
            if page >= min(page_count, max(1, self.config.max_variation_pages)):
                break
            page += 1
        return {"VariationsResult": {"Items": items, "VariationSummary": summary}}

    async def get_browse_nodes(
        self,
        node_ids: Sequence[str],
        resources: Sequence[str] | None = None,
        *,
        abort: AbortCheck | None = None,
    ) -> dict[str, Any]:
        prepared = list(dict.fromkeys(str(node_id).strip() for node_id in node_ids if str(node_id).strip()))
        if not prepared:
            raise ValidationError("At least one browse node id is required.")
        return await self._call(
            "GetBrowseNodes",
            {"BrowseNodeIds": prepared, "Resources": list(resources or BROWSE_NODE_RESOURCES)},
            abort=abort,
        )
