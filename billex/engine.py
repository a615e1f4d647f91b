"""
Billex engine

Wires the store, lock service, batch store, orchestrator, ledger and job
queue together and exposes the two user-facing steps: prepare a batch from
an uploaded document, then confirm it (inline or as an async job).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from billex.batches.state_store import BatchStateStore
from billex.config.billex_config import BillexConfig
from billex.db.connection import Database
from billex.exceptions import ParseError, ValidationError
from billex.extraction.base import ParsedDocument
from billex.extraction.factory import parse
from billex.invoicing.ledger import InvoiceLedger
from billex.invoicing.orchestrator import CredentialsResolver, InvoiceOrchestrator
from billex.invoicing.provider import HttpInvoicingProvider, InvoicingProvider
from billex.invoicing.tenant_gate import TenantGate
from billex.jobs.handlers import BATCH_GENERATION, register_default_handlers
from billex.jobs.queue import JobQueue
from billex.jobs.worker import DeliveryCallback, Worker, WorkerConfig
from billex.locking.lock_service import LockService
from billex.models.batch import Batch
from billex.models.invoice import BatchGenerationReport
from billex.store.base import KeyValueStore
from billex.store.factory import create_store
from billex.utils.progress import ProgressCallback
from billex.validation.guard import AmountGuard, LineItemReview

logger = logging.getLogger(__name__)


@dataclass
class PreparedBatch:
    """A stored batch plus what the user should see before confirming"""
    batch: Batch
    document: ParsedDocument
    reviews: List[LineItemReview] = field(default_factory=list)

    @property
    def excluded(self) -> List[LineItemReview]:
        return [r for r in self.reviews if not r.valid]

    @property
    def discrepancies(self) -> List[LineItemReview]:
        return [r for r in self.reviews if r.valid and r.discrepancy.exceeds]


class BillexEngine:
    """
    Batch invoice generation engine

    Usage:
        engine = await BillexEngine.create(credentials_resolver=lookup_credentials)

        prepared = await engine.prepare_batch(raw, owner_id='u1', tenant_id='t1', customer_id='c1')
        if engine.should_run_async(prepared.batch):
            job_id = await engine.confirm_async('u1', prepared.batch.batch_id)
        else:
            report = await engine.confirm('u1', prepared.batch.batch_id)
    """

    def __init__(
        self,
        store: KeyValueStore,
        db: Database,
        provider: InvoicingProvider,
        tenant_gate: Optional[TenantGate] = None,
        credentials_resolver: Optional[CredentialsResolver] = None,
        config: Optional[BillexConfig] = None,
        guard: Optional[AmountGuard] = None
    ):
        self.config = config or BillexConfig()
        self.store = store
        self.db = db
        self.provider = provider

        self.guard = guard or AmountGuard.from_config(self.config)
        self.lock_service = LockService.from_config(store, self.config)
        self.batch_store = BatchStateStore.from_config(store, self.config)
        self.ledger = InvoiceLedger(db)
        self.queue = JobQueue(db)
        self.orchestrator = InvoiceOrchestrator(
            provider=provider,
            lock_service=self.lock_service,
            batch_store=self.batch_store,
            guard=self.guard,
            ledger=self.ledger,
            tenant_gate=tenant_gate,
            credentials_resolver=credentials_resolver,
            config=self.config
        )
        self.async_threshold = int(self.config.get('orchestrator.async_threshold_items', 25))

    @classmethod
    async def create(
        cls,
        config: Optional[BillexConfig] = None,
        provider: Optional[InvoicingProvider] = None,
        db: Optional[Database] = None,
        **kwargs: Any
    ) -> 'BillexEngine':
        """Build an engine from configuration, connecting the store and database"""
        config = config or BillexConfig()
        store = await create_store(config)
        db = db or Database(config=config)
        db.create_all()
        provider = provider or HttpInvoicingProvider.from_config(config)
        return cls(store, db, provider, config=config, **kwargs)

    async def prepare_batch(
        self,
        raw: bytes,
        owner_id: str,
        tenant_id: str,
        customer_id: str,
        source_format: Optional[str] = None,
        client_label: Optional[str] = None
    ) -> PreparedBatch:
        """
        Parse a document, review its sections and store the valid ones

        Sections failing the amount checks are left out of the batch and
        reported in the returned reviews.

        Raises:
            ParseError: Unsupported document or no section with services
            ValidationError: Every section failed the amount checks
            StoreError: The batch could not be stored
        """
        options = {'client_label': client_label} if client_label else {}
        document = parse(raw, source_format, **options)

        if not document.line_items:
            failed = '; '.join(f"{s.name}: {s.error}" for s in document.failed_sections)
            raise ParseError(f"No section with service records{f' ({failed})' if failed else ''}")

        label = client_label or document.client_label
        reviews = self.guard.review_all(document.line_items, label)
        valid_items = [
            item for item, review in zip(document.line_items, reviews) if review.valid
        ]
        if not valid_items:
            raise ValidationError(
                "No section passed the amount checks: " + '; '.join(r.error for r in reviews),
                client_label=label
            )

        batch = Batch.create(
            owner_id=owner_id,
            tenant_id=tenant_id,
            customer_id=customer_id,
            line_items=valid_items,
            ttl_seconds=self.batch_store.default_ttl,
            client_label=label,
            source_format=document.format,
            metadata={'excluded_sections': [r.source_label for r in reviews if not r.valid]}
        )
        batch = await self.batch_store.save(owner_id, batch.batch_id, batch)

        logger.info(
            f"Prepared batch {batch.batch_id}: {batch.item_count} line items "
            f"({len(reviews) - batch.item_count} excluded)"
        )
        return PreparedBatch(batch=batch, document=document, reviews=reviews)

    def should_run_async(self, batch: Batch) -> bool:
        return batch.item_count > self.async_threshold

    async def confirm(
        self,
        owner_id: str,
        batch_id: str,
        progress_callback: Optional[ProgressCallback] = None
    ) -> BatchGenerationReport:
        """Generate a stored batch inline"""
        return await self.orchestrator.confirm(owner_id, batch_id, progress_callback)

    async def confirm_async(self, owner_id: str, batch_id: str, include_invoices: bool = False) -> str:
        """
        Queue generation of a stored batch

        The batch is loaded first so an unknown or expired batch is refused
        now rather than inside the worker.

        Returns:
            Job ID
        """
        batch = await self.batch_store.load(owner_id, batch_id)
        return self.queue.enqueue(
            BATCH_GENERATION,
            {'owner_id': owner_id, 'batch_id': batch.batch_id, 'include_invoices': include_invoices}
        )

    def create_worker(self, delivery_callback: Optional[DeliveryCallback] = None) -> Worker:
        """Worker with the built-in handlers registered"""
        worker = Worker(self.queue, WorkerConfig.from_config(self.config), delivery_callback)
        register_default_handlers(
            worker,
            orchestrator=self.orchestrator,
            ledger=self.ledger,
            artifact_dir=self.config.get('jobs.artifact_dir', './billex-artifacts')
        )
        return worker

    async def close(self) -> None:
        await self.provider.close()
        await self.store.close()
        self.db.dispose()
