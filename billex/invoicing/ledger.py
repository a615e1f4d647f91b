"""
Invoice ledger: durable record of every invoice the provider registered
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from billex.db.connection import Database
from billex.db.models import IssuedInvoice

logger = logging.getLogger(__name__)


class InvoiceLedger:
    """
    Persists (external invoice id, series, folio, total) for reconciliation

    Usage:
        ledger = InvoiceLedger(db)
        ledger.record(tenant_id='t1', external_invoice_id='inv_1', series='A',
                      folio_number=101, total=Decimal('1160.00'), source_label='Sheet1')
    """

    def __init__(self, db: Database):
        self.db = db

    def record(
        self,
        tenant_id: str,
        external_invoice_id: str,
        series: Optional[str],
        folio_number: Optional[int],
        total: Decimal,
        source_label: str,
        batch_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        client_label: Optional[str] = None,
        computed_total: Optional[Decimal] = None,
        declared_total: Optional[Decimal] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Insert an issued invoice

        Returns:
            Ledger row id

        Raises:
            sqlalchemy.exc.SQLAlchemyError: The insert failed
        """
        with self.db.transaction() as session:
            row = IssuedInvoice(
                tenant_id=tenant_id,
                batch_id=batch_id,
                source_label=source_label,
                external_invoice_id=external_invoice_id,
                series=series,
                folio_number=folio_number,
                total=total,
                customer_id=customer_id,
                client_label=client_label,
                computed_total=computed_total,
                declared_total=declared_total,
                details=details
            )
            session.add(row)
            session.flush()
            row_id = row.id

        logger.debug(f"Recorded invoice {external_invoice_id} for tenant {tenant_id}")
        return row_id

    def list_for_tenant(self, tenant_id: str, batch_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Issued invoices for a tenant, oldest first"""
        with self.db.session() as session:
            query = select(IssuedInvoice).where(IssuedInvoice.tenant_id == tenant_id)
            if batch_id:
                query = query.where(IssuedInvoice.batch_id == batch_id)
            query = query.order_by(IssuedInvoice.created_at, IssuedInvoice.folio_number)
            if limit:
                query = query.limit(limit)

            return [
                {
                    'id': row.id,
                    'external_invoice_id': row.external_invoice_id,
                    'series': row.series,
                    'folio_number': row.folio_number,
                    'total': row.total,
                    'source_label': row.source_label,
                    'batch_id': row.batch_id,
                    'customer_id': row.customer_id,
                    'client_label': row.client_label,
                    'computed_total': row.computed_total,
                    'declared_total': row.declared_total,
                    'created_at': row.created_at
                }
                for row in session.execute(query).scalars().all()
            ]

    def find(self, external_invoice_id: str) -> Optional[IssuedInvoice]:
        with self.db.session() as session:
            return session.execute(
                select(IssuedInvoice).where(IssuedInvoice.external_invoice_id == external_invoice_id)
            ).scalar_one_or_none()
