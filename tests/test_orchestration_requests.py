from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from asin_importer.api.mapper import ProductMapper
from asin_importer.api.types import MARKETPLACES, ItemsResult
from asin_importer.errors import NotFoundError, ValidationError
from asin_importer.orchestration.importer import ItemOutcome
from asin_importer.orchestration.job_store import BatchJobStore
from asin_importer.orchestration.models import BatchJob, BatchStatus
from asin_importer.orchestration.orchestrator import BatchOrchestrator
from asin_importer.orchestration.requests import (
    BrowseNodesRequest,
    ImportBatchRequest,
    ImportOneRequest,
    SearchRequest,
    UnknownRequest,
    parse_request,
)
from asin_importer.orchestration.server import ImportServer
from asin_importer.orchestration.service import ImportService
from asin_importer.storage.cache import Cache
from asin_importer.storage.kv import MemoryKeyValueStore, SqliteKeyValueStore


class _FakeClient:
    def __init__(self) -> None:
        self.marketplace = MARKETPLACES["www.amazon.com"]
        self.search_calls: list[dict[str, Any]] = []
        self.search_error: Exception | None = None
        self.browse_calls: list[list[str]] = []
        self.closed = False

    async def search_items(self, keywords: str, search_index: str = "All", *, page: int = 1, filters: Any = None) -> dict[str, Any]:
        self.search_calls.append({"keywords": keywords, "search_index": search_index, "page": page, "filters": filters})
        if self.search_error is not None:
            raise self.search_error
        return {
            "SearchResult": {
                "TotalResultCount": 25,
                "Items": [{"ASIN": "B000000001", "ItemInfo": {"Title": {"DisplayValue": "Cable"}}}],
            }
        }

    async def fetch_items(self, codes: list[str], resources: Any = None, *, abort: Any = None) -> ItemsResult:
        return ItemsResult(items=[{"ASIN": code, "ItemInfo": {"Title": {"DisplayValue": code}}} for code in codes])

    async def get_browse_nodes(self, node_ids: list[str], resources: Any = None, *, abort: Any = None) -> dict[str, Any]:
        self.browse_calls.append(list(node_ids))
        return {
            "BrowseNodesResult": {
                "BrowseNodes": [{"Id": node_id, "DisplayName": f"Node {node_id}"} for node_id in node_ids]
            }
        }

    async def aclose(self) -> None:
        self.closed = True


class _FakeImporter:
    def __init__(self) -> None:
        self.mapper = ProductMapper()

    async def import_one(self, code: str, *, force_update: bool = False, abort: Any = None) -> ItemOutcome:
        if code == "B00MISSING":
            raise NotFoundError(f"Item {code} was not returned by the product API.")
        return ItemOutcome(item_code=code, status="success", id=7, created=True, message="Item created.")


def _service(*, auth_password: str | None = None, cache: Cache | None = None) -> tuple[ImportService, _FakeClient]:
    client = _FakeClient()
    importer = _FakeImporter()
    orchestrator = BatchOrchestrator(importer, BatchJobStore(MemoryKeyValueStore()))  # type: ignore[arg-type]
    service = ImportService(
        client,  # type: ignore[arg-type]
        importer,  # type: ignore[arg-type]
        orchestrator,
        cache=cache,
        auth_password=auth_password,
    )
    return service, client


def test_parse_request_import_batch_model() -> None:
    request = parse_request({"action": "IMPORT_BATCH", "codes": "B000000001, B000000002", "force_update": "yes"})
    assert isinstance(request, ImportBatchRequest)
    assert request.codes == ["B000000001", "B000000002"]
    assert request.force_update is True


def test_parse_request_import_one_coerces_flag() -> None:
    request = parse_request({"action": "import_one", "code": "B000000001", "force_update": "0"})
    assert isinstance(request, ImportOneRequest)
    assert request.force_update is False


def test_parse_request_search_page_bounds() -> None:
    request = parse_request({"action": "search", "term": "usb cable", "page": 3})
    assert isinstance(request, SearchRequest)
    assert request.type == "keywords"
    with pytest.raises(Exception):
        parse_request({"action": "search", "term": "usb", "page": 11})


def test_parse_request_requires_action() -> None:
    with pytest.raises(ValueError):
        parse_request({"code": "B000000001"})


def test_parse_request_unknown_action() -> None:
    request = parse_request({"action": "something_new"})
    assert isinstance(request, UnknownRequest)


def test_parse_request_rejects_extra_fields() -> None:
    with pytest.raises(Exception):
        parse_request({"action": "ping", "extra": 1})


def test_dispatch_requires_password_when_configured() -> None:
    service, _client = _service(auth_password="s3cret")

    denied = asyncio.run(service.dispatch(parse_request({"action": "ping"})))
    allowed = asyncio.run(service.dispatch(parse_request({"action": "ping", "password": "s3cret"})))

    assert denied["success"] is False
    assert denied["error"]["kind"] == "unauthorized"
    assert allowed["success"] is True
    assert allowed["action"] == "ping"


def test_empty_password_is_rejected() -> None:
    with pytest.raises(ValueError):
        _service(auth_password="")


def test_dispatch_unknown_action_is_structured_failure() -> None:
    service, _client = _service()
    response = asyncio.run(service.dispatch(parse_request({"action": "reviews"})))
    assert response == {
        "action": "reviews",
        "success": False,
        "error": {"kind": "validation", "message": "Unknown action: reviews"},
    }


def test_import_one_failure_carries_error_kind() -> None:
    service, _client = _service()
    response = asyncio.run(service.import_one("B00MISSING"))
    assert response["success"] is False
    assert response["error"]["kind"] == "not_found"
    assert response["item_code"] == "B00MISSING"

    ok = asyncio.run(service.import_one("B000000001"))
    assert ok["success"] is True
    assert ok["id"] == 7


def test_search_keywords_is_cached_and_mapped() -> None:
    service, client = _service(cache=Cache(MemoryKeyValueStore()))

    async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
        first = await service.search("USB cable", page=2)
        second = await service.search("usb cable ", page=2)
        return first, second

    first, second = asyncio.run(scenario())

    assert first["success"] is True
    assert first["items"][0]["item_code"] == "B000000001"
    assert first["page"] == 2
    assert first["total_pages"] == 3
    assert second == first
    assert len(client.search_calls) == 1


def test_search_keywords_without_results_is_empty_page() -> None:
    service, client = _service()
    client.search_error = NotFoundError("No results")
    response = asyncio.run(service.search("nothing matches"))
    assert response["success"] is True
    assert response["items"] == []


def test_search_by_code_uses_item_lookup() -> None:
    service, client = _service()
    response = asyncio.run(service.search("https://www.amazon.com/dp/B000000009", "code"))
    assert response["success"] is True
    assert [item["item_code"] for item in response["items"]] == ["B000000009"]
    assert client.search_calls == []

    bad = asyncio.run(service.search("no codes here", "code"))
    assert bad["success"] is False
    assert bad["error"]["kind"] == ValidationError.kind


def test_batch_actions_through_dispatch() -> None:
    service, _client = _service()

    async def scenario() -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]]:
        started = await service.dispatch(parse_request({"action": "import_batch", "codes": ["B000000001"]}))
        await service.orchestrator.wait(started["batch_id"])
        status = await service.dispatch(parse_request({"action": "status", "batch_id": started["batch_id"]}))
        pause = await service.dispatch(parse_request({"action": "pause", "batch_id": started["batch_id"]}))
        return started, status, pause

    started, status, pause = asyncio.run(scenario())

    assert started["success"] is True
    assert started["total"] == 1
    assert status["batch"]["status"] == BatchStatus.COMPLETED
    assert status["batch"]["percent"] == 100.0
    assert pause["success"] is False
    assert pause["error"]["kind"] == "invalid_transition"

    missing = service.get_status("nope")
    assert missing["error"]["kind"] == "batch_not_found"


def test_server_rejects_malformed_messages() -> None:
    service, _client = _service()
    server = ImportServer(service, host="127.0.0.1", port=0)

    not_json = asyncio.run(server.handle_message("{"))
    not_object = asyncio.run(server.handle_message("[]"))
    bad_field = asyncio.run(server.handle_message(json.dumps({"action": "ping", "extra": 1})))
    ok = asyncio.run(server.handle_message(json.dumps({"action": "help"})))

    assert not_json["error"]["kind"] == "validation"
    assert not_object["error"]["kind"] == "validation"
    assert bad_field["success"] is False
    assert ok["success"] is True
    assert "import_batch" in ok["actions"]


def test_job_store_prunes_by_max_history(tmp_path: Path) -> None:
    store = BatchJobStore(
        SqliteKeyValueStore(str(tmp_path / "jobs.sqlite")),
        max_history=2,
        retention_seconds=10**9,
    )

    now = datetime.now(timezone.utc)
    for idx in range(4):
        store.save(
            BatchJob(
                batch_id=f"j{idx}",
                item_codes=["B000000001"],
                status=BatchStatus.COMPLETED,
                created_at=(now + timedelta(seconds=idx)).isoformat(),
                finished_at=(now + timedelta(seconds=idx + 1)).isoformat(),
            )
        )
    store.save(BatchJob(batch_id="live", item_codes=["B000000001"], status=BatchStatus.RUNNING))

    pruned = store.prune()
    assert pruned == 2
    assert sorted(job.batch_id for job in store.list_jobs()) == ["j2", "j3", "live"]


def test_job_store_prunes_by_retention(tmp_path: Path) -> None:
    store = BatchJobStore(SqliteKeyValueStore(str(tmp_path / "jobs.sqlite")), retention_seconds=3600)
    old = (datetime.now(timezone.utc) - timedelta(days=2)).isoformat()
    store.save(BatchJob(batch_id="old", item_codes=[], status=BatchStatus.FAILED, finished_at=old))
    store.save(BatchJob(batch_id="new", item_codes=[], status=BatchStatus.FAILED, finished_at=datetime.now(timezone.utc).isoformat()))

    assert store.prune() == 1
    assert store.load("old") is None
    assert store.load("new") is not None


def test_job_store_persists_and_loads(tmp_path: Path) -> None:
    db = str(tmp_path / "jobs.sqlite")
    store = BatchJobStore(SqliteKeyValueStore(db))
    job = BatchJob(
        batch_id="b1",
        item_codes=["B000000001", "B000000002"],
        status=BatchStatus.PAUSED,
        queue=["B000000002"],
        processed=1,
        success=1,
        retry_counts={"B000000002": 1},
    )
    store.save(job)
    store.request_control("b1", "resume")

    reopened = BatchJobStore(SqliteKeyValueStore(db))
    loaded = reopened.require("b1")
    assert loaded.status == BatchStatus.PAUSED
    assert loaded.queue == ["B000000002"]
    assert loaded.retry_counts == {"B000000002": 1}
    assert reopened.read_control("b1") == "resume"
    assert reopened.summary() == {"jobs_total": 1, "jobs_by_status": {BatchStatus.PAUSED: 1}}

    with pytest.raises(ValueError):
        reopened.request_control("b1", "restart")


def test_browse_nodes_action_is_cached() -> None:
    service, client = _service(cache=Cache(MemoryKeyValueStore()))

    request = parse_request({"action": "browse_nodes", "node_ids": "172282, 493964"})
    assert isinstance(request, BrowseNodesRequest)
    assert request.node_ids == ["172282", "493964"]

    async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
        first = await service.dispatch(request)
        second = await service.browse_nodes(["493964", "172282"])
        return first, second

    first, second = asyncio.run(scenario())

    assert first["success"] is True
    assert [node["node_id"] for node in first["nodes"]] == ["172282", "493964"]
    assert first["nodes"][0]["name"] == "Node 172282"
    assert second["nodes"] == first["nodes"]
    assert client.browse_calls == [["172282", "493964"]]


def test_purge_expired_covers_store_and_cache() -> None:
    cache = Cache(MemoryKeyValueStore())
    service, _client = _service(cache=cache)
    store = service.orchestrator.job_store.store
    store.set("batch:control:old", {"action": "pause"}, ttl=0)
    store.set("batch:control:live", {"action": "pause"}, ttl=3600)

    response = service.purge_expired()

    assert response == {"success": True, "removed": 1}
    assert store.get("batch:control:live") == {"action": "pause"}


def test_server_stops_on_request_and_closes_client() -> None:
    service, client = _service()
    server = ImportServer(service, host="127.0.0.1", port=0)

    async def scenario() -> None:
        asyncio.get_running_loop().call_later(0.05, server.request_stop)
        await asyncio.wait_for(server.run(), timeout=5)

    asyncio.run(scenario())
    assert client.closed is True
