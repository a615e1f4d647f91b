"""
Canonical Invoice Data Models with Pydantic Validation

Provider-agnostic representation of what gets invoiced (line items built
from service entries) and of what happened when it was (per-item results).
"""

import re
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from billex.utils.amounts import parse_amount

CENT = Decimal('0.01')


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse decimal values from numbers or loosely formatted strings"""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("boolean is not an amount")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        # Either decimal convention: '1.234,56' and '1,234.56' agree
        parsed = parse_amount(value)
        if parsed is None and re.search(r'\d', value):
            raise ValueError(f"not an amount: {value!r}")
        return parsed
    raise ValueError(f"not an amount: {value!r}")


def money(value: Decimal) -> Decimal:
    """Round to cents"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class ServiceEntry(BaseModel):
    """One billable service record read from a source document"""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(..., min_length=1, max_length=100)
    tax_key: Optional[str] = Field(None, max_length=20)
    description: Optional[str] = Field(None, max_length=500)
    location: Optional[str] = Field(None, max_length=500)

    subtotal: Decimal = Decimal('0')
    vat_amount: Decimal = Decimal('0')
    withholding_amount: Decimal = Decimal('0')
    # As stated by the document; informational only
    total: Optional[Decimal] = None

    @field_validator('subtotal', 'vat_amount', 'withholding_amount', mode='before')
    @classmethod
    def parse_amount(cls, v: Any) -> Decimal:
        parsed = to_decimal(v)
        return parsed if parsed is not None else Decimal('0')

    @field_validator('total', mode='before')
    @classmethod
    def parse_total(cls, v: Any) -> Optional[Decimal]:
        return to_decimal(v)

    @field_validator('withholding_amount')
    @classmethod
    def withholding_is_positive(cls, v: Decimal) -> Decimal:
        # Some layouts mark withholding with a negative sign
        return abs(v)

    @model_validator(mode='after')
    def default_total(self) -> 'ServiceEntry':
        if self.total is None:
            self.total = money(self.subtotal + self.vat_amount - self.withholding_amount)
        return self

    @property
    def has_withholding(self) -> bool:
        return self.withholding_amount > 0


class CanonicalLineItem(BaseModel):
    """
    One invoiceable unit: the services of one sheet, group or page.

    computed_total is always derived from the services; whatever value the
    input carries for it is discarded.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    source_label: str = Field(..., min_length=1, max_length=255)
    services: List[ServiceEntry] = Field(default_factory=list)
    declared_total: Optional[Decimal] = None
    computed_total: Decimal = Decimal('0')

    client_label: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('declared_total', mode='before')
    @classmethod
    def parse_declared(cls, v: Any) -> Optional[Decimal]:
        return to_decimal(v)

    @model_validator(mode='after')
    def recompute_total(self) -> 'CanonicalLineItem':
        self.computed_total = money(self.subtotal + self.vat_amount - self.withholding_amount)
        return self

    @property
    def subtotal(self) -> Decimal:
        return sum((s.subtotal for s in self.services), Decimal('0'))

    @property
    def vat_amount(self) -> Decimal:
        return sum((s.vat_amount for s in self.services), Decimal('0'))

    @property
    def withholding_amount(self) -> Decimal:
        return sum((s.withholding_amount for s in self.services), Decimal('0'))

    @property
    def service_count(self) -> int:
        return len(self.services)


class DiscrepancyReport(BaseModel):
    """Computed vs declared total comparison"""
    computed_total: Decimal
    declared_total: Optional[Decimal] = None
    delta: Decimal = Decimal('0')
    tolerance: Decimal = CENT
    exceeds: bool = False


class InvoiceStatus(str, Enum):
    """Per line-item generation outcome"""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class InvoiceResult(BaseModel):
    """Outcome of generating one line item"""
    source_label: str
    status: InvoiceStatus

    # Success
    invoice_id: Optional[str] = None
    series: Optional[str] = None
    folio_number: Optional[int] = None
    total: Optional[Decimal] = None

    # Failure
    error: Optional[str] = None

    computed_total: Optional[Decimal] = None
    declared_total: Optional[Decimal] = None
    discrepancy: Optional[DiscrepancyReport] = None
    service_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == InvoiceStatus.SUCCESS

    @property
    def folio(self) -> Optional[str]:
        if self.folio_number is None:
            return None
        return f"{self.series or ''}-{self.folio_number}" if self.series else str(self.folio_number)


class BatchGenerationReport(BaseModel):
    """Every item's outcome for one batch; the batch itself never fails atomically"""
    batch_id: str
    tenant_id: str
    results: List[InvoiceResult] = Field(default_factory=list)

    @computed_field
    @property
    def succeeded_count(self) -> int:
        return sum(1 for r in self.results if r.status == InvoiceStatus.SUCCESS)

    @computed_field
    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if r.status == InvoiceStatus.FAILED)

    @property
    def succeeded(self) -> List[InvoiceResult]:
        return [r for r in self.results if r.succeeded]

    @property
    def failed(self) -> List[InvoiceResult]:
        return [r for r in self.results if not r.succeeded]

    @property
    def discrepancies(self) -> List[InvoiceResult]:
        return [r for r in self.results if r.discrepancy is not None and r.discrepancy.exceeds]

    @property
    def invoiced_total(self) -> Decimal:
        return sum((r.total or Decimal('0') for r in self.succeeded), Decimal('0'))
