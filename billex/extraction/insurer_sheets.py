"""
Single-invoice spreadsheet layouts

Some clients send one sheet that becomes exactly one invoice, every row (or
row block) being one tow service billed under product key 78101803. They
differ only in how a service is laid out:

- AXA: header row 1 with invoice, order, folio, authorization and amount
  columns; the amount is the subtotal.
- Club Asistencia: a title in row 1 and the header in row 2 with date,
  CAS folio, SAP order and total columns; the total includes VAT.
- Qualitas: no header. A service is a three-row block in column A: folio
  (25GA... or 25GB...), claim number, then a row whose joined text reads
  "<report> $<subtotal>".

Whether the 4% withholding applies is the caller's choice, not something
the sheet states.
"""

import logging
import re
from abc import abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from openpyxl.utils.datetime import from_excel

from billex.exceptions import ParseError
from billex.models.invoice import ServiceEntry, money
from billex.utils.amounts import cell_amount, parse_amount

from .base import DocumentParser
from .column_sheet import MAX_REPORTED_ROW_ERRORS, PRODUCT_KEY_TOW, VAT_RATE, WITHHOLDING_RATE
from .workbook import open_workbook

logger = logging.getLogger(__name__)

AXA_COLUMNS = {
    'invoice': ['FACTURA', 'No. FACTURA', 'Numero Factura'],
    'order': ['No. ORDEN', 'ORDEN', 'Numero Orden', 'No ORDEN'],
    'folio': ['No. FOLIO', 'FOLIO', 'Numero Folio', 'No FOLIO'],
    'authorization': ['AUTORIZACION', 'Autorización', 'Auth'],
    'amount': ['IMPORTE', 'Monto', 'Valor', 'Total'],
}
AXA_REQUIRED = ('invoice', 'order', 'folio', 'authorization', 'amount')

CAS_COLUMNS = {
    'date': ['Fecha', 'Date'],
    'folio': ['Folio CAS', 'FolioCAS'],
    'sap_order': ['PEDIDO SAP', 'PedidoSAP'],
    'total': ['Total', 'Monto', 'Importe'],
}
CAS_REQUIRED = ('date', 'folio', 'sap_order', 'total')
# 0-based index of the header row
CAS_HEADER_ROW = 1

QUALITAS_FOLIO_PREFIXES = ('25GA', '25GB')
LEADING_NUMBER = re.compile(r'^\s*([\d.,]+)')


@dataclass
class SheetService:
    number: int  # 1-based worksheet row
    service_id: str
    description: str
    subtotal: Decimal


def map_header(header: List[Any], aliases: Dict[str, List[str]], required: Tuple[str, ...]) -> Optional[Dict[str, int]]:
    """
    Map logical columns to header positions

    An exact (case-insensitive) alias match wins; otherwise the first
    header containing an alias. Returns None if a required column is
    missing.
    """
    lowered = [str(h).strip().lower() if h is not None else '' for h in header]
    mapping: Dict[str, int] = {}

    for column, names in aliases.items():
        for alias in names:
            if alias.lower() in lowered:
                mapping[column] = lowered.index(alias.lower())
                break
        else:
            for position, name in enumerate(lowered):
                if name and position not in mapping.values() and any(a.lower() in name for a in names):
                    mapping[column] = position
                    break

    if all(column in mapping for column in required):
        return mapping
    return None


def _text(value: Any, default: str = '') -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def _blank(row: List[Any]) -> bool:
    return all(v is None or (isinstance(v, str) and not v.strip()) for v in row)


def _first_sheet_rows(raw: bytes) -> Tuple[str, List[List[Any]]]:
    workbook = open_workbook(raw)
    try:
        if not workbook.worksheets:
            raise ParseError("workbook has no sheets")
        sheet = workbook.worksheets[0]
        return sheet.title, [list(r) for r in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _raise_row_errors(errors: List[str]) -> None:
    if errors:
        shown = '; '.join(errors[:MAX_REPORTED_ROW_ERRORS])
        more = len(errors) - MAX_REPORTED_ROW_ERRORS
        raise ParseError(f"invalid amounts: {shown}" + (f" ...and {more} more" if more > 0 else ''))


def format_sheet_date(value: Any) -> str:
    """ISO date for a date cell, an Excel serial number or text"""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return from_excel(value).date().isoformat()
    return _text(value)


class SingleInvoiceSheetParser(DocumentParser):
    """
    First sheet of a workbook as one invoice of tow services

    Subclasses read the sheet's services; VAT and the optional withholding
    are computed here.
    """

    def __init__(
        self,
        client_label: Optional[str] = None,
        with_withholding: bool = True,
        vat_rate: Decimal = VAT_RATE,
        withholding_rate: Decimal = WITHHOLDING_RATE
    ):
        super().__init__(client_label)
        self.with_withholding = with_withholding
        self.vat_rate = Decimal(str(vat_rate))
        self.withholding_rate = Decimal(str(withholding_rate))

    @classmethod
    def sniff(cls, raw: bytes) -> bool:
        try:
            title, rows = _first_sheet_rows(raw)
        except ParseError:
            return False
        return cls.recognises(rows)

    @classmethod
    @abstractmethod
    def recognises(cls, rows: List[List[Any]]) -> bool:
        """Whether the first sheet's rows have this layout"""
        pass

    @abstractmethod
    def read_services(self, rows: List[List[Any]]) -> List[SheetService]:
        """
        Read the services of the first sheet

        Raises:
            ParseError: Required columns missing or invalid amounts
        """
        pass

    def detect_sections(self, raw: bytes) -> List[Tuple[str, List[SheetService]]]:
        title, rows = _first_sheet_rows(raw)
        if not rows:
            raise ParseError("sheet is empty")
        services = self.read_services(rows)
        logger.info(f"Read {len(services)} services from {self.format_name} sheet {title}")
        return [(title, services)]

    def extract_services(self, services: List[SheetService]) -> List[ServiceEntry]:
        entries = []
        for service in services:
            withholding = money(service.subtotal * self.withholding_rate) if self.with_withholding else Decimal('0')
            entries.append(ServiceEntry(
                id=service.service_id or f"ROW_{service.number}",
                description=service.description,
                subtotal=money(service.subtotal),
                vat_amount=money(service.subtotal * self.vat_rate),
                withholding_amount=withholding
            ))
        return entries

    def section_metadata(self, name: str, services: List[SheetService]) -> Dict[str, Any]:
        return {'product_key': PRODUCT_KEY_TOW, 'withholding': self.with_withholding}


class AxaSheetParser(SingleInvoiceSheetParser):
    """Header-mapped rows; the amount column is the subtotal"""

    format_name = 'axa_sheet'
    client_label = 'AXA'

    @classmethod
    def recognises(cls, rows: List[List[Any]]) -> bool:
        return bool(rows) and map_header(rows[0], AXA_COLUMNS, AXA_REQUIRED) is not None

    def read_services(self, rows: List[List[Any]]) -> List[SheetService]:
        mapping = map_header(rows[0], AXA_COLUMNS, AXA_REQUIRED)
        if mapping is None:
            raise ParseError(
                "missing required columns: invoice, order, folio, authorization and amount are needed"
            )

        services: List[SheetService] = []
        errors: List[str] = []
        for offset, row in enumerate(rows[1:]):
            if _blank(row):
                continue
            number = offset + 2

            def value(column: str) -> Any:
                position = mapping[column]
                return row[position] if position < len(row) else None

            amount = cell_amount(value('amount'))
            if amount is None or amount <= 0:
                errors.append(f"row {number}: amount must be a positive number")
                continue
            folio = _text(value('folio'), 'N/A')
            services.append(SheetService(
                number=number,
                service_id=_text(value('folio')),
                description=(
                    f"ARRASTRE DE GRUA FACTURA {_text(value('invoice'), 'N/A')} "
                    f"No. ORDEN {_text(value('order'), 'N/A')} No. FOLIO {folio} "
                    f"AUTORIZACION {_text(value('authorization'), 'N/A')}"
                ),
                subtotal=amount
            ))

        _raise_row_errors(errors)
        return services


class ClubAsistenciaSheetParser(SingleInvoiceSheetParser):
    """Header in row 2; totals include VAT and are divided back to a subtotal"""

    format_name = 'club_asistencia_sheet'
    client_label = 'CLUB ASISTENCIA'

    @classmethod
    def recognises(cls, rows: List[List[Any]]) -> bool:
        return len(rows) > CAS_HEADER_ROW and map_header(rows[CAS_HEADER_ROW], CAS_COLUMNS, CAS_REQUIRED) is not None

    def read_services(self, rows: List[List[Any]]) -> List[SheetService]:
        mapping = None
        if len(rows) > CAS_HEADER_ROW:
            mapping = map_header(rows[CAS_HEADER_ROW], CAS_COLUMNS, CAS_REQUIRED)
        if mapping is None:
            raise ParseError(
                "missing required columns in row 2: date, CAS folio, SAP order and total are needed"
            )

        services: List[SheetService] = []
        errors: List[str] = []
        for offset, row in enumerate(rows[CAS_HEADER_ROW + 1:]):
            if _blank(row):
                continue
            number = offset + CAS_HEADER_ROW + 2

            def value(column: str) -> Any:
                position = mapping[column]
                return row[position] if position < len(row) else None

            total = cell_amount(value('total'))
            if total is None or total <= 0:
                errors.append(f"row {number}: total must be a positive number")
                continue
            folio = _text(value('folio'))
            services.append(SheetService(
                number=number,
                service_id=folio,
                description=(
                    f"Fecha {format_sheet_date(value('date'))} Folio CAS {folio} "
                    f"PEDIDO SAP {_text(value('sap_order'))}"
                ),
                subtotal=total / (1 + self.vat_rate)
            ))

        _raise_row_errors(errors)
        return services


def _is_qualitas_folio(value: Any) -> bool:
    return _text(value).upper().startswith(QUALITAS_FOLIO_PREFIXES)


class QualitasSheetParser(SingleInvoiceSheetParser):
    """Three-row service blocks in column A, without a header"""

    format_name = 'qualitas_sheet'
    client_label = 'QUALITAS'

    @classmethod
    def recognises(cls, rows: List[List[Any]]) -> bool:
        return any(row and _is_qualitas_folio(row[0]) for row in rows)

    def read_services(self, rows: List[List[Any]]) -> List[SheetService]:
        services: List[SheetService] = []
        index = 0
        while index < len(rows):
            row = rows[index]
            if not row or not _is_qualitas_folio(row[0]):
                index += 1
                continue

            folio = _text(row[0])
            if index + 2 >= len(rows):
                logger.debug(f"Incomplete service {folio} at row {index + 1}, skipping")
                break

            claim = _text(rows[index + 1][0] if rows[index + 1] else None)
            line = ' '.join(_text(v) for v in rows[index + 2])
            parts = [p for p in line.split('$') if p.strip()]
            amount = None
            if len(parts) >= 2:
                match = LEADING_NUMBER.match(parts[1])
                amount = parse_amount(match.group(1).replace(',', '')) if match else None

            if amount is None or amount <= 0:
                logger.debug(f"Service {folio} at row {index + 1} has no readable subtotal, skipping")
                index += 1
                continue

            services.append(SheetService(
                number=index + 1,
                service_id=folio,
                description=f"Folio {folio} Siniestro {claim} Reporte {parts[0].strip()}",
                subtotal=amount
            ))
            index += 3

        return services
