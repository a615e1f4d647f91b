from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String, Text, Index

from billex.db.connection import get_base

Base = get_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IssuedInvoice(Base):
    """
    Durable record of an invoice registered with the provider

    Written right after a successful create call so invoices can be
    reconciled against the provider later.
    """
    __tablename__ = 'issued_invoices'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    tenant_id = Column(String(255), nullable=False, index=True)
    batch_id = Column(String(64), nullable=True, index=True)
    source_label = Column(String(255), nullable=False)

    external_invoice_id = Column(String(255), nullable=False, unique=True)
    series = Column(String(50), nullable=True)
    folio_number = Column(Integer, nullable=True)
    total = Column(Numeric(14, 2), nullable=False)

    customer_id = Column(String(255), nullable=True)
    client_label = Column(String(100), nullable=True)
    computed_total = Column(Numeric(14, 2), nullable=True)
    declared_total = Column(Numeric(14, 2), nullable=True)
    details = Column(JSON)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index('ix_issued_invoices_tenant_created', 'tenant_id', 'created_at'),
    )

    def __repr__(self):
        return f"<IssuedInvoice(id={self.external_invoice_id}, tenant='{self.tenant_id}', folio={self.series}-{self.folio_number})>"


class JobRecord(Base):
    """Tracks async jobs: queue state, progress and results"""
    __tablename__ = 'jobs'

    id = Column(String(40), primary_key=True, default=lambda: f"job_{uuid4().hex}")
    kind = Column(String(100), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    payload = Column(JSON)
    progress = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)

    result_artifact_path = Column(Text)
    result = Column(JSON)
    error = Column(Text)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    run_after = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    scheduled_cleanup_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index('ix_jobs_status_run_after', 'status', 'run_after'),
    )

    def __repr__(self):
        return f"<JobRecord(id={self.id}, kind='{self.kind}', status='{self.status}')>"
