from .cli import build_arg_parser, main, run_command
from .importer import ItemOutcome, ProductImporter
from .job_store import BatchJobStore
from .models import BatchJob, BatchStatus, ImportDefaults
from .orchestrator import BatchOrchestrator, OrchestratorConfig, ProgressEvent
from .scheduler import AsyncioScheduler, Scheduler
from .server import ImportServer
from .service import ImportService

__all__ = [
    "AsyncioScheduler",
    "BatchJob",
    "BatchJobStore",
    "BatchOrchestrator",
    "BatchStatus",
    "ImportDefaults",
    "ImportServer",
    "ImportService",
    "ItemOutcome",
    "OrchestratorConfig",
    "ProductImporter",
    "ProgressEvent",
    "Scheduler",
    "build_arg_parser",
    "main",
    "run_command",
]
