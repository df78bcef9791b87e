from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import Any

from ..api.client import ProductApiClient
from ..api.mapper import ProductMapper
from ..api.types import ApiClientConfig, CredentialSource, Credentials, EnvCredentialSource
from ..catalog import KeyValueCatalogStore
from ..codes import extract_codes_from_csv
from ..errors import ImporterError
from ..storage.cache import Cache, CacheConfig
from ..storage.kv import SqliteKeyValueStore
from ..utils import setup_logging
from .importer import ProductImporter
from .job_store import BatchJobStore
from .models import ImportDefaults
from .orchestrator import BatchOrchestrator, OrchestratorConfig, ProgressEvent
from .server import ImportServer
from .service import ImportService


LOGGER = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Import catalog items from the product advertising API")
    parser.add_argument("--access-key", default=None, help="API access key (default: $PAAPI_ACCESS_KEY).")
    parser.add_argument("--secret-key", default=None, help="API secret key (default: $PAAPI_SECRET_KEY).")
    parser.add_argument("--partner-tag", default=None, help="Partner/affiliate tag (default: $PAAPI_PARTNER_TAG).")
    parser.add_argument(
        "--marketplace",
        default=None,
        help="Marketplace domain, e.g. www.amazon.de (default: $PAAPI_MARKETPLACE or www.amazon.com).",
    )
    parser.add_argument(
        "--state-db",
        default="./output/asin_importer.sqlite",
        help="SQLite file holding cache entries, batch state and the local catalog.",
    )
    parser.add_argument("--timeout-sec", type=float, default=30.0, help="HTTP timeout per request.")
    parser.add_argument("--max-attempts", type=int, default=4, help="Attempts per failure cause (throttle/network).")
    parser.add_argument("--backoff-base-sec", type=float, default=1.0, help="First retry delay, doubled per attempt.")
    parser.add_argument("--backoff-max-sec", type=float, default=30.0, help="Upper bound for a single retry delay.")
    parser.add_argument(
        "--requests-per-second",
        type=float,
        default=1.0,
        help="Client-side request rate limit (0 disables).",
    )
    parser.add_argument("--cache-max-items", type=int, default=1000, help="Item ceiling per cache group.")
    parser.add_argument("--no-cache", action="store_true", help="Disable the response cache.")
    parser.add_argument("--max-category-depth", type=int, default=3, help="Category path depth cap.")
    parser.add_argument("--max-item-retries", type=int, default=2, help="Re-enqueues per item within a batch run.")
    parser.add_argument("--error-log-limit", type=int, default=100, help="Errors kept per batch.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Application log level.",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    import_cmd = commands.add_parser("import", help="Import item codes as one batch and wait for it.")
    import_cmd.add_argument("codes", nargs="*", help="Item codes.")
    import_cmd.add_argument("--csv", action="append", default=[], help="CSV/TXT file with item codes.")
    import_cmd.add_argument("--force-update", action="store_true", help="Refresh items already in the catalog.")

    search_cmd = commands.add_parser("search", help="Search the product API.")
    search_cmd.add_argument("term", help="Keywords or item codes.")
    search_cmd.add_argument("--type", default="keywords", choices=["keywords", "code"])
    search_cmd.add_argument("--index", default="All", help="Search index (category).")
    search_cmd.add_argument("--page", type=int, default=1)

    nodes_cmd = commands.add_parser("categories", help="Look up browse nodes (categories) by id.")
    nodes_cmd.add_argument("node_ids", nargs="+", help="Browse node ids.")

    status_cmd = commands.add_parser("status", help="Show a batch snapshot or the batch summary.")
    status_cmd.add_argument("batch_id", nargs="?", default=None)

    for name in ("pause", "resume", "cancel"):
        control_cmd = commands.add_parser(name, help=f"Request '{name}' for a batch.")
        control_cmd.add_argument("batch_id")

    serve_cmd = commands.add_parser("serve", help="Run the WebSocket server and the periodic trigger.")
    serve_cmd.add_argument("--host", default="127.0.0.1", help="WebSocket host")
    serve_cmd.add_argument("--port", type=int, default=8765, help="WebSocket port")
    serve_cmd.add_argument("--auth-password", default=None, help="Optional static password for actions.")
    serve_cmd.add_argument(
        "--schedule-interval-sec",
        type=float,
        default=3600.0,
        help="Cadence of scheduled runs (0 disables).",
    )
    serve_cmd.add_argument(
        "--sync-catalog",
        action="store_true",
        help="Scheduled runs refresh every item already in the local catalog.",
    )
    return parser


def resolve_credentials(args: argparse.Namespace, fallback: CredentialSource | None = None) -> Credentials:
    """Command-line values win; missing ones come from ``fallback`` (the environment by default)."""
    base = (fallback or EnvCredentialSource()).get()
    return Credentials(
        access_key=args.access_key or base.access_key,
        secret_key=args.secret_key or base.secret_key,
        partner_tag=args.partner_tag or base.partner_tag,
        marketplace=args.marketplace or base.marketplace,
    )


@dataclass(slots=True)
class Components:
    client: ProductApiClient
    cache: Cache
    catalog: KeyValueCatalogStore
    importer: ProductImporter
    orchestrator: BatchOrchestrator
    service: ImportService


def build_components(args: argparse.Namespace, *, auth_password: str | None = None) -> Components:
    credentials = resolve_credentials(args).validate()
    store = SqliteKeyValueStore(args.state_db)
    cache = Cache(store, CacheConfig(enabled=not args.no_cache, max_items=max(1, args.cache_max_items)))
    client = ProductApiClient(
        credentials,
        config=ApiClientConfig(
            timeout_sec=max(1.0, args.timeout_sec),
            max_attempts=max(1, args.max_attempts),
            backoff_base_sec=max(0.0, args.backoff_base_sec),
            backoff_max_sec=max(0.0, args.backoff_max_sec),
            requests_per_second=max(0.0, args.requests_per_second),
        ),
        cache=cache,
    )
    catalog = KeyValueCatalogStore(store)
    mapper = ProductMapper(
        max_category_depth=max(1, args.max_category_depth),
        default_currency=client.marketplace.currency,
    )
    importer = ProductImporter(client, catalog, mapper=mapper, cache=cache)
    scheduled_source = catalog.item_codes if getattr(args, "sync_catalog", False) else None
    orchestrator = BatchOrchestrator(
        importer,
        BatchJobStore(store),
        config=OrchestratorConfig(
            defaults=ImportDefaults(
                force_update=getattr(args, "force_update", False),
                max_item_retries=max(0, args.max_item_retries),
                error_log_limit=max(1, args.error_log_limit),
            )
        ),
        on_progress=_log_progress,
        scheduled_source=scheduled_source,
    )
    service = ImportService(client, importer, orchestrator, cache=cache, mapper=mapper, auth_password=auth_password)
    return Components(client, cache, catalog, importer, orchestrator, service)


def _log_progress(event: ProgressEvent) -> None:
    LOGGER.info(
        "Progress: batch=%s status=%s %s/%s success=%s failed=%s skipped=%s eta=%ss",
        event.batch_id,
        event.status,
        event.processed,
        event.total,
        event.success,
        event.failed,
        event.skipped,
        event.eta_sec if event.eta_sec is not None else "-",
    )


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


async def run_import(args: argparse.Namespace, components: Components) -> int:
    codes = list(args.codes)
    for path in args.csv:
        codes.extend(extract_codes_from_csv(path))
    response = await components.service.import_batch(codes, force_update=args.force_update)
    if not response["success"]:
        _print(response)
        return 1
    job = await components.orchestrator.wait(response["batch_id"])
    _print(job.snapshot())
    return 0 if job.status == "completed" else 1


async def run_command(args: argparse.Namespace) -> int:
    setup_logging(args.log_level)
    auth_password = getattr(args, "auth_password", None)
    if isinstance(auth_password, str) and not auth_password.strip():
        raise ValueError("--auth-password must be non-empty when provided.")
    components = build_components(args, auth_password=auth_password)
    service = components.service
    try:
        if args.command == "import":
            return await run_import(args, components)
        if args.command == "search":
            response = await service.search(args.term, args.type, search_index=args.index, page=args.page)
        elif args.command == "categories":
            response = await service.browse_nodes(args.node_ids)
        elif args.command == "status":
            if args.batch_id:
                response = service.get_status(args.batch_id)
            else:
                response = {"success": True, "summary": components.orchestrator.job_store.summary()}
        elif args.command in {"pause", "resume", "cancel"}:
            response = getattr(service, args.command)(args.batch_id)
            if args.command == "resume" and response["success"]:
                # A resumed orphan runs in this process; stay until it finishes.
                job = await components.orchestrator.wait(args.batch_id)
                response["batch"] = job.snapshot()
        elif args.command == "serve":
            LOGGER.info(
                "Starting server config: %s",
                json.dumps(
                    {
                        "host": args.host,
                        "port": args.port,
                        "marketplace": components.client.marketplace.domain,
                        "state_db": args.state_db,
                        "schedule_interval_sec": args.schedule_interval_sec,
                        "sync_catalog": args.sync_catalog,
                        "auth_enabled": auth_password is not None,
                    },
                    ensure_ascii=False,
                ),
            )
            server = ImportServer(
                service,
                host=args.host,
                port=args.port,
                schedule_interval_sec=args.schedule_interval_sec or None,
            )
            await server.run()
            return 0
        else:
            raise ValueError(f"Unknown command: {args.command}")
    finally:
        await components.orchestrator.aclose()
        await components.client.aclose()
    _print(response)
    return 0 if response.get("success") else 1


def main() -> None:
    parser = build_arg_parser()
    args = parser.parse_args()

    try:
        exit_code = asyncio.run(run_command(args))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        exit_code = 130
    except ImporterError as exc:
        LOGGER.error("Command failed: %s", exc.message)
        exit_code = 2
    sys.exit(exit_code)
