"""
Built-in job handlers

- artifact_cleanup: delete a result file once its retention window passed
- batch_generation: generate a stored batch and write a report workbook
- invoice_report: export a tenant's issued invoices to a workbook
"""

import logging
import zipfile
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from billex.exceptions import JobError
from billex.invoicing.artifacts import download_batch_artifacts
from billex.invoicing.ledger import InvoiceLedger
from billex.invoicing.orchestrator import InvoiceOrchestrator
from billex.models.invoice import BatchGenerationReport
from billex.models.job import AsyncJob, JobOutcome
from billex.reports.excel_report import build_generation_report, build_ledger_report

from .queue import ARTIFACT_CLEANUP
from .worker import Worker

logger = logging.getLogger(__name__)

BATCH_GENERATION = 'batch_generation'
INVOICE_REPORT = 'invoice_report'


def _require(job: AsyncJob, *fields: str) -> Dict[str, Any]:
    missing = [f for f in fields if not job.payload.get(f)]
    if missing:
        raise JobError(f"Job {job.job_id} payload is missing {', '.join(missing)}")
    return job.payload


async def cleanup_artifact(job: AsyncJob, progress: Callable[[int], Any]) -> JobOutcome:
    """Delete an expired artifact; an already missing file counts as done"""
    path = Path(_require(job, 'path')['path'])

    existed = path.exists()
    path.unlink(missing_ok=True)

    # Per-job artifact directories are removed once empty
    parent = path.parent
    if parent.is_dir() and not any(parent.iterdir()):
        parent.rmdir()

    if existed:
        logger.info(f"Deleted artifact {path}")
    else:
        logger.info(f"Artifact {path} already gone")
    return JobOutcome(summary={'path': str(path), 'deleted': existed})


def _generation_summary(report: BatchGenerationReport) -> Dict[str, Any]:
    return {
        'batch_id': report.batch_id,
        'tenant_id': report.tenant_id,
        'succeeded': report.succeeded_count,
        'failed': report.failed_count,
        'invoiced_total': str(report.invoiced_total),
        'folios': [r.folio for r in report.succeeded],
        'failures': [{'section': r.source_label, 'error': r.error} for r in report.failed],
        'discrepancies': [r.source_label for r in report.discrepancies]
    }


def make_batch_generation_handler(orchestrator: InvoiceOrchestrator, artifact_dir: Union[str, Path]):
    """
    Handler generating a stored batch

    Payload:
        owner_id, batch_id: Address of the batch
        include_invoices: Also bundle the provider's PDF/XML files (optional)
    """
    artifact_dir = Path(artifact_dir)

    async def handle(job: AsyncJob, progress: Callable[[int], Any]) -> JobOutcome:
        payload = _require(job, 'owner_id', 'batch_id')
        batch = await orchestrator.batch_store.load(payload['owner_id'], payload['batch_id'])
        report = await orchestrator.generate_batch(batch, progress_callback=progress)

        job_dir = artifact_dir / job.job_id
        report_path = build_generation_report(report, batch, job_dir / f"batch_{batch.batch_id}.xlsx")
        summary = _generation_summary(report)
        artifact = report_path

        if payload.get('include_invoices') and report.succeeded:
            credentials = await orchestrator.resolve_credentials(batch.tenant_id)
            bundle, failures = await download_batch_artifacts(
                orchestrator.provider,
                credentials,
                report.results,
                job_dir / f"invoices_{batch.batch_id}.zip"
            )
            with zipfile.ZipFile(bundle, 'a') as archive:
                archive.write(report_path, report_path.name)
            report_path.unlink()
            summary['download_failures'] = failures
            artifact = bundle

        return JobOutcome(artifact_path=str(artifact), summary=summary)

    return handle


def make_invoice_report_handler(ledger: InvoiceLedger, artifact_dir: Union[str, Path]):
    """
    Handler exporting the ledger

    Payload:
        tenant_id: Whose invoices
        batch_id: Restrict to one batch (optional)
    """
    artifact_dir = Path(artifact_dir)

    async def handle(job: AsyncJob, progress: Callable[[int], Any]) -> JobOutcome:
        payload = _require(job, 'tenant_id')
        rows = ledger.list_for_tenant(payload['tenant_id'], batch_id=payload.get('batch_id'))
        progress(50)
        path = build_ledger_report(rows, artifact_dir / job.job_id / f"invoices_{payload['tenant_id']}.xlsx")
        return JobOutcome(artifact_path=str(path), summary={'invoices': len(rows)})

    return handle


def register_default_handlers(
    worker: Worker,
    orchestrator: Optional[InvoiceOrchestrator] = None,
    ledger: Optional[InvoiceLedger] = None,
    artifact_dir: Union[str, Path] = './billex-artifacts'
) -> None:
    """Register cleanup plus whichever handlers the given services allow"""
    worker.register_handler(ARTIFACT_CLEANUP, cleanup_artifact)
    if orchestrator is not None:
        # Invoices issued by a partial run cannot be taken back; never rerun a batch
        worker.register_handler(
            BATCH_GENERATION,
            make_batch_generation_handler(orchestrator, artifact_dir),
            retryable=False
        )
    if ledger is not None:
        worker.register_handler(INVOICE_REPORT, make_invoice_report_handler(ledger, artifact_dir))
