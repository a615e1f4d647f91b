"""
Tabular spreadsheet layout

A single sheet with a header row (case number, service, amount and an
optional withholding column). Rows are grouped into up to three invoices:
tow services with withholding, tow services without withholding, and every
other service. VAT and withholding are computed from the amount.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from billex.exceptions import ParseError
from billex.models.invoice import ServiceEntry, money
from billex.utils.amounts import cell_amount

from .base import DocumentParser
from .workbook import open_workbook

logger = logging.getLogger(__name__)

COLUMN_ALIASES = {
    'case_number': ['No. Caso', 'Caso', 'Numero de Caso', 'Num Caso', 'No Caso', 'Folio'],
    'service': ['Servicio', 'Tipo de Servicio', 'Tipo Servicio', 'C'],
    'amount': ['Subtotal', 'Monto', 'Importe', 'Valor', 'Costo', 'H', 'Precio'],
    'withholding': ['Retención', 'Retencion', 'Ret', 'Retención (4%)', 'Retencion 4%', 'Valor Retención'],
}
REQUIRED_COLUMNS = ('case_number', 'service', 'amount')

TOW_KEYWORDS = ('GRUA', 'ARRASTRE', 'REMOLQUE')

TOW_WITH_WITHHOLDING = 'tow_with_withholding'
TOW_WITHOUT_WITHHOLDING = 'tow_without_withholding'
OTHER_SERVICES = 'other_services'

PRODUCT_KEY_TOW = '78101803'
PRODUCT_KEY_SERVICES = '90121800'

VAT_RATE = Decimal('0.16')
WITHHOLDING_RATE = Decimal('0.04')

MAX_REPORTED_ROW_ERRORS = 5


@dataclass
class SheetRow:
    number: int  # 1-based worksheet row
    case_number: str
    service: str
    amount: Decimal
    withholding: Optional[Decimal] = None


@dataclass
class RowGroup:
    withholding: bool
    product_key: str
    rows: List[SheetRow] = field(default_factory=list)


def map_columns(header: List[Any]) -> Optional[Dict[str, int]]:
    """
    Map logical columns to header positions

    Exact (case-insensitive) alias matches win; otherwise a header that
    contains an alias is accepted. Single-letter aliases only match
    exactly. Returns None if a required column is missing.
    """
    names = [str(h).strip() if h is not None else '' for h in header]
    lowered = [n.lower() for n in names]
    mapping: Dict[str, int] = {}

    for column, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            if alias.lower() in lowered:
                mapping[column] = lowered.index(alias.lower())
                break
        else:
            for position, name in enumerate(lowered):
                if not name or position in mapping.values():
                    continue
                if any(len(alias) > 1 and alias.lower() in name for alias in aliases):
                    mapping[column] = position
                    break

    if all(column in mapping for column in REQUIRED_COLUMNS):
        if 'withholding' not in mapping:
            logger.debug("No withholding column; assuming no withholding")
        return mapping
    logger.debug(f"Required columns not found in header {names}: {mapping}")
    return None


def is_tow_service(service: str) -> bool:
    service = service.upper()
    return any(keyword in service for keyword in TOW_KEYWORDS)


class ColumnSheetParser(DocumentParser):
    """Single-sheet workbook with a header row, grouped by service type"""

    format_name = 'column_sheet'
    client_label = 'CHUBB'

    def __init__(
        self,
        client_label: Optional[str] = None,
        vat_rate: Decimal = VAT_RATE,
        withholding_rate: Decimal = WITHHOLDING_RATE
    ):
        super().__init__(client_label)
        self.vat_rate = Decimal(str(vat_rate))
        self.withholding_rate = Decimal(str(withholding_rate))

    @classmethod
    def sniff(cls, raw: bytes) -> bool:
        try:
            workbook = open_workbook(raw)
        except ParseError:
            return False
        try:
            if not workbook.worksheets:
                return False
            header = next(workbook.worksheets[0].iter_rows(max_row=1, values_only=True), None)
            return header is not None and map_columns(list(header)) is not None
        finally:
            workbook.close()

    def _read_rows(self, raw: bytes) -> Tuple[Dict[str, int], List[List[Any]]]:
        workbook = open_workbook(raw)
        try:
            if not workbook.worksheets:
                raise ParseError("workbook has no sheets")
            rows = [list(r) for r in workbook.worksheets[0].iter_rows(values_only=True)]
        finally:
            workbook.close()

        if not rows:
            raise ParseError("sheet is empty")
        mapping = map_columns(rows[0])
        if mapping is None:
            raise ParseError(
                "missing required columns: case number, service and amount are needed"
            )
        return mapping, rows[1:]

    def detect_sections(self, raw: bytes) -> List[Tuple[str, RowGroup]]:
        mapping, data = self._read_rows(raw)

        def value(row: List[Any], column: str) -> Any:
            position = mapping.get(column)
            if position is None or position >= len(row):
                return None
            return row[position]

        rows: List[SheetRow] = []
        errors: List[str] = []
        for offset, row in enumerate(data):
            if all(v is None or (isinstance(v, str) and not v.strip()) for v in row):
                continue
            number = offset + 2
            amount = cell_amount(value(row, 'amount'))
            if amount is None or amount <= 0:
                errors.append(f"row {number}: amount must be a positive number")
                continue
            case_number = value(row, 'case_number')
            rows.append(SheetRow(
                number=number,
                case_number=str(case_number).strip() if case_number is not None else '',
                service=str(value(row, 'service') or '').strip().upper(),
                amount=amount,
                withholding=cell_amount(value(row, 'withholding'))
            ))

        if errors:
            shown = '; '.join(errors[:MAX_REPORTED_ROW_ERRORS])
            more = len(errors) - MAX_REPORTED_ROW_ERRORS
            raise ParseError(f"invalid amounts: {shown}" + (f" ...and {more} more" if more > 0 else ''))

        groups = {
            TOW_WITH_WITHHOLDING: RowGroup(withholding=True, product_key=PRODUCT_KEY_TOW),
            TOW_WITHOUT_WITHHOLDING: RowGroup(withholding=False, product_key=PRODUCT_KEY_SERVICES),
            OTHER_SERVICES: RowGroup(withholding=False, product_key=PRODUCT_KEY_SERVICES),
        }
        for row in rows:
            if not row.service:
                logger.debug(f"Row {row.number} skipped: no service")
                continue
            if is_tow_service(row.service):
                if row.withholding is not None and row.withholding < 0:
                    groups[TOW_WITH_WITHHOLDING].rows.append(row)
                else:
                    groups[TOW_WITHOUT_WITHHOLDING].rows.append(row)
            else:
                groups[OTHER_SERVICES].rows.append(row)

        logger.info(
            f"Classified {len(rows)} rows: "
            + ', '.join(f"{name}={len(group.rows)}" for name, group in groups.items())
        )
        return list(groups.items())

    def extract_services(self, group: RowGroup) -> List[ServiceEntry]:
        services = []
        for row in group.rows:
            withholding = money(row.amount * self.withholding_rate) if group.withholding else Decimal('0')
            services.append(ServiceEntry(
                id=row.case_number or f"ROW_{row.number}",
                description=f"No. Caso {row.case_number} Servicio {row.service}",
                subtotal=row.amount,
                vat_amount=money(row.amount * self.vat_rate),
                withholding_amount=withholding
            ))
        return services

    def section_metadata(self, name: str, group: RowGroup) -> Dict[str, Any]:
        return {'product_key': group.product_key, 'withholding': group.withholding}
