from __future__ import annotations

import logging
import secrets
from typing import Any, Mapping, Sequence

from ..api.client import ProductApiClient
from ..api.mapper import ProductMapper
from ..api.records import ProductRecord, SearchHit, SearchPage
from ..codes import extract_codes_from_text, parse_code_list
from ..errors import ImporterError, NotFoundError, ValidationError, error_to_dict
from ..storage.cache import GROUP_CATEGORIES, GROUP_SEARCHES, Cache
from ..utils import utc_now_iso
from .importer import ProductImporter
from .orchestrator import BatchOrchestrator
from .requests import (
    BrowseNodesRequest,
    CacheStatsRequest,
    CancelRequest,
    HelpRequest,
    ImportBatchRequest,
    ImportOneRequest,
    JobsRequest,
    ParsedRequest,
    PauseRequest,
    PingRequest,
    ResumeRequest,
    SearchRequest,
    StatusRequest,
    UnknownRequest,
)


LOGGER = logging.getLogger(__name__)

ACTIONS = [
    "ping",
    "search",
    "import_one",
    "import_batch",
    "browse_nodes",
    "status",
    "cancel",
    "pause",
    "resume",
    "jobs",
    "cache_stats",
]


def _failure(exc: BaseException, **extra: Any) -> dict[str, Any]:
    error = error_to_dict(exc)
    return {"success": False, "error": error, "message": error["message"]} | extra


class ImportService:
    """Transport-agnostic request/response surface of the importer.

    Every public method returns a dict with ``success``; failures carry
    ``error: {kind, message}`` instead of raising.
    """

    def __init__(
        self,
        client: ProductApiClient,
        importer: ProductImporter,
        orchestrator: BatchOrchestrator,
        *,
        cache: Cache | None = None,
        mapper: ProductMapper | None = None,
        auth_password: str | None = None,
    ):
        if auth_password == "":
            raise ValueError("auth_password must be non-empty when provided.")
        self.client = client
        self.importer = importer
        self.orchestrator = orchestrator
        self.cache = cache
        self.mapper = mapper or importer.mapper
        self._auth_password = auth_password

    @staticmethod
    def _hit_from_record(record: ProductRecord) -> SearchHit:
        return SearchHit(
            item_code=record.item_code,
            title=record.title,
            image_url=record.image_url,
            price_display=record.price.display if record.price else None,
            detail_url=record.detail_url,
        )

    async def _search_codes(self, term: str) -> SearchPage:
        codes = parse_code_list(term) or extract_codes_from_text(term)
        if not codes:
            raise ValidationError(f"No valid item codes in search term: {term!r}")
        result = await self.client.fetch_items(codes)
        records = self.mapper.parse(result.as_payload(), "items")
        hits = [self._hit_from_record(record) for record in records]
        return SearchPage(items=hits, page=1, total_pages=1 if hits else 0, total_results=len(hits))

    async def _search_keywords(
        self,
        term: str,
        *,
        search_index: str,
        page: int,
        filters: Mapping[str, Any],
    ) -> SearchPage:
        async def load() -> dict[str, Any]:
            try:
                payload = await self.client.search_items(term, search_index, page=page, filters=filters)
            except NotFoundError:
                return SearchPage(page=page).model_dump(mode="json")
            return self.mapper.parse(payload, "search", page=page).model_dump(mode="json")

        key = ("search", term.strip().lower(), search_index, page, dict(filters))
        if self.cache is None:
            return SearchPage.model_validate(await load())
        return SearchPage.model_validate(await self.cache.get_or_set(key, GROUP_SEARCHES, load))

    async def search(
        self,
        term: str,
        type: str = "keywords",
        filters: Mapping[str, Any] | None = None,
        *,
        search_index: str = "All",
        page: int = 1,
    ) -> dict[str, Any]:
        try:
            if type == "code":
                result = await self._search_codes(term)
            elif type == "keywords":
                result = await self._search_keywords(
                    term,
                    search_index=search_index,
                    page=page,
                    filters=filters or {},
                )
            else:
                raise ValidationError(f"Unsupported search type: {type!r}")
        except ImporterError as exc:
            return _failure(exc)
        return {"success": True} | result.model_dump(mode="json")

    async def browse_nodes(self, node_ids: Sequence[str]) -> dict[str, Any]:
        async def load() -> list[dict[str, Any]]:
            payload = await self.client.get_browse_nodes(node_ids)
            nodes = self.mapper.parse(payload, "browse_nodes")
            return [node.model_dump(mode="json") for node in nodes]

        try:
            if self.cache is None:
                nodes = await load()
            else:
                key = ("browse_nodes", self.client.marketplace.domain, sorted(node_ids))
                nodes = await self.cache.get_or_set(key, GROUP_CATEGORIES, load)
        except ImporterError as exc:
            return _failure(exc)
        return {"success": True, "nodes": nodes}

    async def import_one(self, code: str, force_update: bool = False) -> dict[str, Any]:
        try:
            outcome = await self.importer.import_one(code, force_update=force_update)
        except ImporterError as exc:
            LOGGER.warning("Single import failed: code=%s error=%s", code, exc.message)
            return _failure(exc, item_code=code)
        return {"success": True} | outcome.to_payload()

    async def import_batch(self, codes: Sequence[str], force_update: bool | None = None) -> dict[str, Any]:
        try:
            job = await self.orchestrator.start(codes, force_update=force_update)
        except ImporterError as exc:
            return _failure(exc)
        return {"success": True, "batch_id": job.batch_id, "status": job.status, "total": job.total}

    def purge_expired(self) -> dict[str, Any]:
        removed = self.orchestrator.job_store.purge_expired()
        if self.cache is not None:
            removed += self.cache.purge_expired()
        if removed:
            LOGGER.info("Expired state purged: rows=%s", removed)
        return {"success": True, "removed": removed}

    def get_status(self, batch_id: str) -> dict[str, Any]:
        try:
            job = self.orchestrator.get_status(batch_id)
        except ImporterError as exc:
            return _failure(exc, batch_id=batch_id)
        return {"success": True, "batch": job.snapshot()}

    def _control(self, batch_id: str, action: str) -> dict[str, Any]:
        handler = {
            "cancel": self.orchestrator.cancel,
            "pause": self.orchestrator.pause,
            "resume": self.orchestrator.resume,
        }[action]
        try:
            job = handler(batch_id)
        except ImporterError as exc:
            return _failure(exc, batch_id=batch_id)
        return {"success": True, "batch_id": batch_id, "requested": action, "status": job.status}

    def cancel(self, batch_id: str) -> dict[str, Any]:
        return self._control(batch_id, "cancel")

    def pause(self, batch_id: str) -> dict[str, Any]:
        return self._control(batch_id, "pause")

    def resume(self, batch_id: str) -> dict[str, Any]:
        return self._control(batch_id, "resume")

    def _is_authenticated(self, request: ParsedRequest) -> bool:
        if self._auth_password is None:
            return True
        request_password = getattr(request, "password", None)
        if not isinstance(request_password, str):
            return False
        return secrets.compare_digest(request_password, self._auth_password)

    async def dispatch(self, request: ParsedRequest) -> dict[str, Any]:
        action = getattr(request, "action", None)
        try:
            if not self._is_authenticated(request):
                return {
                    "success": False,
                    "action": action,
                    "error": {"kind": "unauthorized", "message": "Provide a valid 'password'."},
                }

            if isinstance(request, PingRequest):
                response = {"success": True, "timestamp": utc_now_iso()}
            elif isinstance(request, SearchRequest):
                response = await self.search(
                    request.term,
                    request.type,
                    request.filters,
                    search_index=request.search_index,
                    page=request.page,
                )
            elif isinstance(request, ImportOneRequest):
                response = await self.import_one(request.code, request.force_update)
            elif isinstance(request, ImportBatchRequest):
                response = await self.import_batch(request.codes, request.force_update)
            elif isinstance(request, BrowseNodesRequest):
                response = await self.browse_nodes(request.node_ids)
            elif isinstance(request, StatusRequest):
                if request.batch_id:
                    response = self.get_status(request.batch_id)
                else:
                    response = {"success": True, "summary": self.orchestrator.job_store.summary()}
            elif isinstance(request, CancelRequest):
                response = self.cancel(request.batch_id)
            elif isinstance(request, PauseRequest):
                response = self.pause(request.batch_id)
            elif isinstance(request, ResumeRequest):
                response = self.resume(request.batch_id)
            elif isinstance(request, JobsRequest):
                response = {"success": True, "jobs": [job.snapshot() for job in self.orchestrator.list_jobs()]}
            elif isinstance(request, CacheStatsRequest):
                stats = self.cache.statistics() if self.cache is not None else None
                response = {"success": True, "statistics": stats}
            elif isinstance(request, HelpRequest):
                response = {
                    "success": True,
                    "auth_required": self._auth_password is not None,
                    "actions": list(ACTIONS),
                }
            elif isinstance(request, UnknownRequest):
                response = {
                    "success": False,
                    "error": {"kind": "validation", "message": f"Unknown action: {request.action}"},
                }
            else:
                response = {
                    "success": False,
                    "error": {"kind": "validation", "message": "Unsupported request model."},
                }
        except Exception as exc:
            LOGGER.exception("Dispatch failed: action=%s error=%s", action, exc)
            response = _failure(exc)
        return {"action": action} | response
