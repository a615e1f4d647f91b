from .queue import JobQueue, ARTIFACT_CLEANUP
from .worker import Worker, WorkerConfig, run_worker
from .handlers import (
    BATCH_GENERATION,
    INVOICE_REPORT,
    cleanup_artifact,
    make_batch_generation_handler,
    make_invoice_report_handler,
    register_default_handlers,
)

__all__ = [
    'JobQueue',
    'ARTIFACT_CLEANUP',
    'Worker',
    'WorkerConfig',
    'run_worker',
    'BATCH_GENERATION',
    'INVOICE_REPORT',
    'cleanup_artifact',
    'make_batch_generation_handler',
    'make_invoice_report_handler',
    'register_default_handlers',
]
