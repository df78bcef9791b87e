from __future__ import annotations

from typing import Any, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from .models import coerce_bool


class RequestModel(BaseModel):
    model_config = ConfigDict(extra="forbid")
    password: StrictStr | None = None


class PingRequest(RequestModel):
    action: Literal["ping"]


class SearchRequest(RequestModel):
    action: Literal["search"]
    term: str = Field(min_length=1)
    type: Literal["keywords", "code"] = "keywords"
    search_index: str = "All"
    page: int = Field(default=1, ge=1, le=10)
    filters: dict[str, Any] = Field(default_factory=dict)


class ImportOneRequest(RequestModel):
    action: Literal["import_one"]
    code: str = Field(min_length=1)
    force_update: bool = False


class ImportBatchRequest(RequestModel):
    action: Literal["import_batch"]
    codes: list[str] = Field(min_length=1)
    force_update: bool | None = None


class BrowseNodesRequest(RequestModel):
    action: Literal["browse_nodes"]
    node_ids: list[str] = Field(min_length=1, max_length=10)


class StatusRequest(RequestModel):
    action: Literal["status"]
    batch_id: str | None = None


class CancelRequest(RequestModel):
    action: Literal["cancel"]
    batch_id: str = Field(min_length=1)


class PauseRequest(RequestModel):
    action: Literal["pause"]
    batch_id: str = Field(min_length=1)


class ResumeRequest(RequestModel):
    action: Literal["resume"]
    batch_id: str = Field(min_length=1)


class JobsRequest(RequestModel):
    action: Literal["jobs"]


class CacheStatsRequest(RequestModel):
    action: Literal["cache_stats"]


class HelpRequest(RequestModel):
    action: Literal["help"]


class UnknownRequest(RequestModel):
    action: str


ParsedRequest: TypeAlias = (
    PingRequest
    | SearchRequest
    | ImportOneRequest
    | ImportBatchRequest
    | BrowseNodesRequest
    | StatusRequest
    | CancelRequest
    | PauseRequest
    | ResumeRequest
    | JobsRequest
    | CacheStatsRequest
    | HelpRequest
    | UnknownRequest
)


ACTION_TO_MODEL: dict[str, type[RequestModel]] = {
    "ping": PingRequest,
    "search": SearchRequest,
    "import_one": ImportOneRequest,
    "import_batch": ImportBatchRequest,
    "browse_nodes": BrowseNodesRequest,
    "status": StatusRequest,
    "cancel": CancelRequest,
    "pause": PauseRequest,
    "resume": ResumeRequest,
    "jobs": JobsRequest,
    "cache_stats": CacheStatsRequest,
    "help": HelpRequest,
}


def parse_request(payload: dict[str, Any]) -> ParsedRequest:
    action_raw = payload.get("action")
    if not isinstance(action_raw, str) or not action_raw.strip():
        raise ValueError("Field 'action' is required.")

    action = action_raw.strip().lower()
    model_cls = ACTION_TO_MODEL.get(action)
    password = payload.get("password")
    if password is not None and not isinstance(password, str):
        raise ValueError("Field 'password' must be a string.")

    if model_cls is None:
        return UnknownRequest(action=action, password=password)

    normalized = dict(payload)
    normalized["action"] = action
    if "force_update" in normalized and normalized["force_update"] is not None:
        normalized["force_update"] = coerce_bool(normalized["force_update"])
    if action == "import_batch" and isinstance(normalized.get("codes"), str):
        normalized["codes"] = [token for token in normalized["codes"].replace(",", " ").split() if token]
    if action == "browse_nodes" and isinstance(normalized.get("node_ids"), (str, int)):
        normalized["node_ids"] = [token for token in str(normalized["node_ids"]).replace(",", " ").split() if token]
    return model_cls.model_validate(normalized)
