import asyncio
import io
import logging
from decimal import Decimal

import pytest
from openpyxl import Workbook

from billex.config.billex_config import BillexConfig
from billex.exceptions import ProviderError, StoreUnavailable
from billex.invoicing.provider import InvoicingProvider, ProviderInvoice
from billex.models import CanonicalLineItem, ServiceEntry
from billex.store import InMemoryKeyValueStore


class FakeClock:
    """Monotonic clock driven by the test"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def stacked_workbook(sheets):
    """
    Build a stacked-block workbook

    Args:
        sheets: {title: (services, declared_total)} where services is a list
            of (id, subtotal, vat, withholding) with at most two entries
    """
    wb = Workbook()
    wb.remove(wb.active)
    for title, (services, declared) in sheets.items():
        ws = wb.create_sheet(title)
        row = 1
        for service_id, subtotal, vat, withholding in services:
            ws.cell(row=row, column=1, value=service_id)
            ws.cell(row=row + 1, column=1, value='78101803')
            ws.cell(row=row + 2, column=1, value='Arrastre de vehiculo')
            ws.cell(row=row + 3, column=1, value='CDMX')
            ws.cell(row=row + 4, column=1, value=subtotal)
            ws.cell(row=row + 5, column=1, value=vat)
            ws.cell(row=row + 6, column=1, value=withholding)
            row += 10
        if declared is not None:
            ws.cell(row=20, column=1, value=declared)
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def column_workbook(rows, header=('No. Caso', 'Servicio', 'Subtotal', 'Retención')):
    wb = Workbook()
    ws = wb.active
    ws.title = 'Servicios'
    ws.append(list(header))
    for row in rows:
        ws.append(list(row))
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def rows_workbook(rows, title='Hoja1'):
    """Single-sheet workbook holding rows as given, row 1 first"""
    wb = Workbook()
    ws = wb.active
    ws.title = title
    for row in rows:
        ws.append(list(row))
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def fresh_config():
    """Every test starts from the packaged defaults"""
    BillexConfig.reset()
    yield
    BillexConfig.reset()


@pytest.fixture(autouse=True)
def restore_billex_logger():
    """Undo handlers and levels installed by setup_logging"""
    logger = logging.getLogger('billex')
    handlers, level = list(logger.handlers), logger.level
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
    logger.setLevel(level)


@pytest.fixture
def fake_clock():
    return FakeClock()


class FakeProvider(InvoicingProvider):
    """
    Records calls and numbers folios sequentially

    Any service whose description contains 'RECHAZAR' is refused with a
    non-retryable provider error.
    """

    def __init__(self, series='A', first_folio=1):
        self.series = series
        self.next_folio = first_folio
        self.calls = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def create_invoice(self, credentials, spec):
        self.calls.append((credentials, spec))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            descriptions = [item['product']['description'] for item in spec['items']]
            if any('RECHAZAR' in d for d in descriptions):
                raise ProviderError("Provider returned 422: invalid product", status_code=422, retryable=False)

            folio = self.next_folio
            self.next_folio += 1
            subtotal = sum(Decimal(str(item['product']['price'])) for item in spec['items'])
            return ProviderInvoice(
                id=f'inv_{folio}',
                series=self.series,
                folio_number=folio,
                total=subtotal,
                raw={'customer': spec['customer']}
            )
        finally:
            self.in_flight -= 1

    async def download_artifact(self, credentials, invoice_id, kind):
        return f'{kind}:{invoice_id}'.encode()


def line_item(label, *subtotals, declared=None, description='Arrastre'):
    """A line item with one service per subtotal, 16% VAT and no withholding"""
    services = [
        ServiceEntry(
            id=f'{label}_{n}',
            description=description,
            subtotal=Decimal(str(subtotal)),
            vat_amount=(Decimal(str(subtotal)) * Decimal('0.16')).quantize(Decimal('0.01'))
        )
        for n, subtotal in enumerate(subtotals, start=1)
    ]
    return CanonicalLineItem(source_label=label, services=services, declared_total=declared)


class FlakyLockStore(InMemoryKeyValueStore):
    """In-memory store whose Nth set_if_absent loses the connection"""

    def __init__(self, fail_on=2, **kwargs):
        super().__init__(**kwargs)
        self.fail_on = fail_on
        self.set_if_absent_calls = 0

    async def set_if_absent(self, key, value, ttl):
        self.set_if_absent_calls += 1
        if self.set_if_absent_calls == self.fail_on:
            raise StoreUnavailable('connection reset by peer')
        return await super().set_if_absent(key, value, ttl)
