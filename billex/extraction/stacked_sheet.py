"""
Stacked-block spreadsheet layout

One sheet per invoice. Services are stacked vertically in column A, each
block starting at an id such as ``ABC123_4`` and followed by fixed rows:

    +0  id
    +1  tax key
    +2  description
    +3  location
    +4  subtotal
    +5  VAT
    +6  withholding
    +8  total

The total the sheet expects sits in row 20 of column A.
"""

import logging
import re
from decimal import Decimal
from typing import Any, List, Optional, Sequence, Tuple

from billex.exceptions import ParseError
from billex.models.invoice import ServiceEntry
from billex.utils.amounts import cell_amount

from .base import DocumentParser
from .workbook import open_workbook

logger = logging.getLogger(__name__)

SERVICE_ID_PATTERN = re.compile(r'^[A-Z0-9]+_\d+$', re.IGNORECASE)

# 0-based index of row 20
DECLARED_TOTAL_ROW = 19

OFFSET_TAX_KEY = 1
OFFSET_DESCRIPTION = 2
OFFSET_LOCATION = 3
OFFSET_SUBTOTAL = 4
OFFSET_VAT = 5
OFFSET_WITHHOLDING = 6
OFFSET_TOTAL = 8


def _column_a(worksheet: Any) -> List[Any]:
    return [row[0] if row else None for row in worksheet.iter_rows(min_col=1, max_col=1, values_only=True)]


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class StackedSheetParser(DocumentParser):
    """Multi-sheet workbook with one vertical block per service"""

    format_name = 'stacked_sheet'
    client_label = 'ESCOTEL'

    @classmethod
    def sniff(cls, raw: bytes) -> bool:
        try:
            workbook = open_workbook(raw)
        except ParseError:
            return False
        try:
            return any(
                SERVICE_ID_PATTERN.match(str(value).strip())
                for sheet in workbook.worksheets
                for value in _column_a(sheet)
                if value is not None
            )
        finally:
            workbook.close()

    def detect_sections(self, raw: bytes) -> List[Tuple[str, Sequence[Any]]]:
        workbook = open_workbook(raw)
        try:
            return [(sheet.title, _column_a(sheet)) for sheet in workbook.worksheets]
        finally:
            workbook.close()

    def declared_total(self, column: Sequence[Any]) -> Optional[Decimal]:
        if len(column) <= DECLARED_TOTAL_ROW:
            return None
        return cell_amount(column[DECLARED_TOTAL_ROW])

    def extract_services(self, column: Sequence[Any]) -> List[ServiceEntry]:
        services = []

        def cell(index: int) -> Any:
            return column[index] if index < len(column) else None

        def amount(index: int, label: str) -> Decimal:
            value = cell(index)
            parsed = cell_amount(value)
            if parsed is None and _text(value) is not None:
                raise ParseError(f"row {index + 1}: {label} is not a number ({value!r})")
            return parsed if parsed is not None else Decimal('0')

        for index, value in enumerate(column):
            service_id = _text(value)
            if not service_id or not SERVICE_ID_PATTERN.match(service_id):
                continue

            subtotal = cell_amount(cell(index + OFFSET_SUBTOTAL))
            if subtotal is None or subtotal <= 0:
                logger.debug(f"Ignoring service {service_id}: no positive subtotal")
                continue

            services.append(ServiceEntry(
                id=service_id,
                tax_key=_text(cell(index + OFFSET_TAX_KEY)),
                description=_text(cell(index + OFFSET_DESCRIPTION)),
                location=_text(cell(index + OFFSET_LOCATION)),
                subtotal=subtotal,
                vat_amount=amount(index + OFFSET_VAT, 'VAT'),
                withholding_amount=amount(index + OFFSET_WITHHOLDING, 'withholding'),
                total=cell_amount(cell(index + OFFSET_TOTAL))
            ))

        return services
