"""
Invoice Orchestrator

Consumes a confirmed batch: checks the tenant gate, then for each line item
re-validates the amount, calls the provider under the tenant's folio lock
and records the issued invoice. Every item gets its own outcome; one
failure never stops its siblings. The batch is consumed (deleted) before
the first provider call, so a run that dies halfway can never be replayed
into duplicate invoices.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from billex.batches.state_store import BatchStateStore
from billex.config.billex_config import BillexConfig, validate_timing, worst_case_provider_latency
from billex.exceptions import (
    ConfigurationError,
    GenerationRejected,
    LockError,
    LockTimeoutError,
    ProviderError,
    StoreError,
    ValidationError,
)
from billex.locking.lock_service import LockService, folio_lock_key
from billex.models.batch import Batch
from billex.models.invoice import (
    BatchGenerationReport,
    CanonicalLineItem,
    InvoiceResult,
    InvoiceStatus,
)
from billex.utils.progress import ProgressCallback, ProgressReporter
from billex.validation.guard import AmountGuard

from .invoice_spec import InvoiceOptions, build_invoice_spec
from .ledger import InvoiceLedger
from .provider import InvoicingProvider, TenantCredentials
from .tenant_gate import AllowAllTenantGate, TenantGate

logger = logging.getLogger(__name__)

CredentialsResolver = Callable[[str], Any]


class InvoiceOrchestrator:
    """
    Generates the invoices of a batch

    Usage:
        orchestrator = InvoiceOrchestrator(
            provider=provider,
            lock_service=locks,
            batch_store=batches,
            guard=AmountGuard.from_config(),
            ledger=InvoiceLedger(db),
            tenant_gate=gate,
            credentials_resolver=lookup_credentials
        )
        report = await orchestrator.generate_batch(batch, progress_callback=on_progress)
    """

    def __init__(
        self,
        provider: InvoicingProvider,
        lock_service: LockService,
        batch_store: BatchStateStore,
        guard: Optional[AmountGuard] = None,
        ledger: Optional[InvoiceLedger] = None,
        tenant_gate: Optional[TenantGate] = None,
        credentials_resolver: Optional[CredentialsResolver] = None,
        config: Optional[BillexConfig] = None,
        invoice_options: Optional[InvoiceOptions] = None,
        max_concurrency: Optional[int] = None
    ):
        self.config = config or BillexConfig()
        validate_timing(self.config)

        self.provider = provider
        self.lock_service = lock_service
        self.batch_store = batch_store
        self.guard = guard or AmountGuard.from_config(self.config)
        self.ledger = ledger
        self.tenant_gate = tenant_gate or AllowAllTenantGate()
        self.credentials_resolver = credentials_resolver
        self.invoice_options = invoice_options or InvoiceOptions.from_config(self.config)

        self.folio_ttl = float(self.config.get('locks.folio_ttl_seconds', 60))
        self.lock_retries = int(self.config.get('locks.max_retries', 5))
        self.lock_retry_delay = float(self.config.get('locks.retry_base_delay_seconds', 0.1))
        self.max_concurrency = max(1, int(
            max_concurrency if max_concurrency is not None
            else self.config.get('orchestrator.max_concurrency', 1)
        ))
        self.progress_step = int(self.config.get('orchestrator.progress_step', 10))

        if lock_service.default_ttl <= worst_case_provider_latency(self.config):
            logger.warning(
                f"Lock service default TTL ({lock_service.default_ttl:g}s) is below the provider's "
                f"worst-case latency; folio locks use locks.folio_ttl_seconds ({self.folio_ttl:g}s)"
            )

    async def resolve_credentials(self, tenant_id: str) -> TenantCredentials:
        if self.credentials_resolver is not None:
            credentials = self.credentials_resolver(tenant_id)
            if inspect.isawaitable(credentials):
                credentials = await credentials
            if credentials is None:
                raise ConfigurationError(f"No provider credentials for tenant {tenant_id}")
            return credentials

        api_key = self.config.get('provider.api_key')
        if not api_key:
            raise ConfigurationError("provider.api_key is not configured and no credentials resolver was given")
        return TenantCredentials(tenant_id=tenant_id, api_key=api_key)

    async def confirm(
        self,
        owner_id: str,
        batch_id: str,
        progress_callback: Optional[ProgressCallback] = None
    ) -> BatchGenerationReport:
        """Load a stored batch and generate it"""
        batch = await self.batch_store.load(owner_id, batch_id)
        return await self.generate_batch(batch, progress_callback)

    async def generate_batch(
        self,
        batch: Batch,
        progress_callback: Optional[ProgressCallback] = None
    ) -> BatchGenerationReport:
        """
        Generate one invoice per line item

        Args:
            batch: The confirmed batch
            progress_callback: Called with coarse percentages; never awaited

        Returns:
            Report listing every line item's outcome in document order

        Raises:
            GenerationRejected: The tenant gate refused; no provider call was made
            StoreError: The shared store failed. Before consumption the batch
                is left stored and nothing was invoiced; afterwards the batch
                is gone and the items already issued are in the ledger
            ConfigurationError: No credentials for the tenant
        """
        decision = await self.tenant_gate.is_generation_allowed(batch.tenant_id)
        if not decision.allowed:
            logger.warning(f"Batch {batch.batch_id} rejected for tenant {batch.tenant_id}: {decision.reason}")
            raise GenerationRejected(batch.tenant_id, decision.reason)

        credentials = await self.resolve_credentials(batch.tenant_id)

        # Consume before invoicing; if this fails nothing has been issued yet
        await self.batch_store.delete(batch.owner_id, batch.batch_id)

        reporter = ProgressReporter(progress_callback, step=self.progress_step)
        total = len(batch.line_items)

        logger.info(
            f"Generating batch {batch.batch_id} for tenant {batch.tenant_id}: "
            f"{total} line items, concurrency {self.max_concurrency}"
        )

        results: List[Optional[InvoiceResult]] = [None] * total

        if self.max_concurrency == 1:
            for index, item in enumerate(batch.line_items):
                results[index] = await self._generate_item(batch, item, credentials)
                reporter.report(index + 1, total)
        else:
            semaphore = asyncio.Semaphore(self.max_concurrency)
            done = 0

            async def run(index: int, item: CanonicalLineItem) -> None:
                nonlocal done
                async with semaphore:
                    results[index] = await self._generate_item(batch, item, credentials)
                done += 1
                reporter.report(done, total)

            outcomes = await asyncio.gather(
                *(run(index, item) for index, item in enumerate(batch.line_items)),
                return_exceptions=True
            )
            errors = [o for o in outcomes if isinstance(o, BaseException)]
            if errors:
                raise errors[0]

        reporter.complete()

        report = BatchGenerationReport(
            batch_id=batch.batch_id,
            tenant_id=batch.tenant_id,
            results=results
        )

        logger.info(
            f"Batch {batch.batch_id} finished: {report.succeeded_count} succeeded, "
            f"{report.failed_count} failed"
        )
        return report

    async def _generate_item(
        self,
        batch: Batch,
        item: CanonicalLineItem,
        credentials: TenantCredentials
    ) -> InvoiceResult:
        client_label = item.client_label or batch.client_label
        common = dict(
            source_label=item.source_label,
            computed_total=item.computed_total,
            declared_total=item.declared_total,
            discrepancy=self.guard.detect_discrepancy(item.computed_total, item.declared_total),
            service_count=item.service_count
        )

        def failed(message: str) -> InvoiceResult:
            logger.warning(f"Line item {item.source_label} of batch {batch.batch_id} failed: {message}")
            return InvoiceResult(status=InvoiceStatus.FAILED, error=message, **common)

        # The batch may have aged since it was first reviewed
        try:
            self.guard.validate_amount(item.computed_total, client_label, f"section {item.source_label}")
        except ValidationError as e:
            return failed(str(e))

        spec = build_invoice_spec(item, batch.customer_id, self.invoice_options)

        try:
            invoice = await self.lock_service.with_lock(
                folio_lock_key(batch.tenant_id),
                lambda: self.provider.create_invoice(credentials, spec),
                ttl=self.folio_ttl,
                max_retries=self.lock_retries,
                retry_delay=self.lock_retry_delay
            )
        except LockTimeoutError as e:
            return failed(f"folio lock busy: {e}")
        except ProviderError as e:
            return failed(str(e))
        except (LockError, StoreError):
            raise
        except Exception as e:
            logger.exception(f"Unexpected error invoicing {item.source_label} of batch {batch.batch_id}")
            return failed(f"unexpected error: {e}")

        if self.ledger is not None:
            try:
                self.ledger.record(
                    tenant_id=batch.tenant_id,
                    external_invoice_id=invoice.id,
                    series=invoice.series,
                    folio_number=invoice.folio_number,
                    total=invoice.total,
                    source_label=item.source_label,
                    batch_id=batch.batch_id,
                    customer_id=batch.customer_id,
                    client_label=client_label,
                    computed_total=item.computed_total,
                    declared_total=item.declared_total
                )
            except SQLAlchemyError as e:
                logger.error(f"Invoice {invoice.id} was created but could not be recorded: {e}")
                return InvoiceResult(
                    status=InvoiceStatus.FAILED,
                    invoice_id=invoice.id,
                    series=invoice.series,
                    folio_number=invoice.folio_number,
                    total=invoice.total,
                    error=f"invoice {invoice.id} was created but could not be recorded: {e}",
                    **common
                )

        return InvoiceResult(
            status=InvoiceStatus.SUCCESS,
            invoice_id=invoice.id,
            series=invoice.series,
            folio_number=invoice.folio_number,
            total=invoice.total,
            **common
        )
