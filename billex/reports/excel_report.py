"""
Excel exports of generation results and the invoice ledger
"""

import logging
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from openpyxl import Workbook
from openpyxl.styles import Font

from billex.models.batch import Batch
from billex.models.invoice import BatchGenerationReport

logger = logging.getLogger(__name__)

GENERATION_HEADERS = [
    'Section', 'Status', 'Series', 'Folio', 'Invoice ID', 'Services',
    'Computed total', 'Declared total', 'Delta', 'Discrepancy', 'Invoiced total', 'Error'
]

LEDGER_HEADERS = [
    'Invoice ID', 'Series', 'Folio', 'Total', 'Section', 'Batch',
    'Customer', 'Client', 'Computed total', 'Declared total', 'Created at'
]


def _number(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _write_header(ws, headers: List[str]) -> None:
    ws.append(headers)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    ws.freeze_panes = 'A2'


def build_generation_report(
    report: BatchGenerationReport,
    batch: Optional[Batch],
    path: Union[str, Path]
) -> Path:
    """
    Write one row per line item plus a totals row

    Args:
        report: Orchestrator output
        batch: The generated batch, for the summary sheet (optional)
        path: Destination .xlsx

    Returns:
        The written path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    wb = Workbook()
    ws = wb.active
    ws.title = 'Invoices'
    _write_header(ws, GENERATION_HEADERS)

    computed_sum = Decimal('0')
    for result in report.results:
        discrepancy = result.discrepancy
        computed_sum += result.computed_total or Decimal('0')
        ws.append([
            result.source_label,
            result.status.value,
            result.series,
            result.folio_number,
            result.invoice_id,
            result.service_count,
            _number(result.computed_total),
            _number(result.declared_total),
            _number(discrepancy.delta) if discrepancy and discrepancy.declared_total is not None else None,
            'YES' if discrepancy and discrepancy.exceeds else '',
            _number(result.total),
            result.error
        ])

    totals_row = ws.max_row + 1
    ws.append([
        'TOTAL', f"{report.succeeded_count} ok / {report.failed_count} failed",
        None, None, None,
        sum(r.service_count for r in report.results),
        _number(computed_sum), None, None,
        len(report.discrepancies),
        _number(report.invoiced_total),
        None
    ])
    for cell in ws[totals_row]:
        cell.font = Font(bold=True)

    summary = wb.create_sheet('Summary')
    summary.append(['Batch', report.batch_id])
    summary.append(['Tenant', report.tenant_id])
    if batch is not None:
        summary.append(['Customer', batch.customer_id])
        summary.append(['Client', batch.client_label])
        summary.append(['Source format', batch.source_format])
        summary.append(['Created at', batch.created_at.isoformat() if batch.created_at else None])

    wb.save(path)
    logger.info(f"Wrote generation report {path} ({len(report.results)} rows)")
    return path


def build_ledger_report(rows: Iterable[Dict[str, Any]], path: Union[str, Path]) -> Path:
    """Export ledger rows (as returned by InvoiceLedger.list_for_tenant)"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    wb = Workbook()
    ws = wb.active
    ws.title = 'Ledger'
    _write_header(ws, LEDGER_HEADERS)

    total = Decimal('0')
    count = 0
    for row in rows:
        count += 1
        total += Decimal(str(row.get('total') or 0))
        created_at = row.get('created_at')
        ws.append([
            row.get('external_invoice_id'),
            row.get('series'),
            row.get('folio_number'),
            _number(row.get('total')),
            row.get('source_label'),
            row.get('batch_id'),
            row.get('customer_id'),
            row.get('client_label'),
            _number(row.get('computed_total')),
            _number(row.get('declared_total')),
            created_at.isoformat() if created_at else None
        ])

    ws.append(['TOTAL', None, count, _number(total)])
    for cell in ws[ws.max_row]:
        cell.font = Font(bold=True)

    wb.save(path)
    logger.info(f"Wrote ledger report {path} ({count} invoices)")
    return path
