"""
Validation Guard

A circuit breaker against malformed input producing absurd invoice amounts
(a wrong amount column, a broken number format, duplicated rows), plus a
discrepancy detector comparing computed against declared totals. The amount
check rejects; the discrepancy check only flags.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from billex.config.billex_config import BillexConfig
from billex.exceptions import ValidationError
from billex.models.invoice import CanonicalLineItem, DiscrepancyReport, money, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = Decimal('0.01')


@dataclass
class AmountLimits:
    """Floor and ceiling for one client's invoice totals"""
    min: Decimal = Decimal('1.00')
    max: Decimal = Decimal('1500000.00')

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fallback: Optional['AmountLimits'] = None) -> 'AmountLimits':
        fallback = fallback or cls()
        return cls(
            min=to_decimal(data.get('min', fallback.min)),
            max=to_decimal(data.get('max', fallback.max))
        )


@dataclass
class LineItemReview:
    """Pre-confirmation view of one line item"""
    source_label: str
    computed_total: Decimal
    declared_total: Optional[Decimal]
    discrepancy: DiscrepancyReport
    error: Optional[str] = None

    @property
    def valid(self) -> bool:
        return self.error is None


def detect_discrepancy(
    computed_total: Decimal,
    declared_total: Optional[Decimal],
    tolerance: Decimal = DEFAULT_TOLERANCE
) -> DiscrepancyReport:
    """
    Compare computed and declared totals

    delta = computed - declared; exceeds when |delta| > tolerance. Without a
    declared total there is nothing to compare and the delta is zero.
    """
    computed_total = to_decimal(computed_total)
    tolerance = to_decimal(tolerance)
    if declared_total is None:
        return DiscrepancyReport(
            computed_total=computed_total,
            declared_total=None,
            delta=Decimal('0'),
            tolerance=tolerance,
            exceeds=False
        )

    declared_total = to_decimal(declared_total)
    delta = money(computed_total - declared_total)
    return DiscrepancyReport(
        computed_total=computed_total,
        declared_total=declared_total,
        delta=delta,
        tolerance=tolerance,
        exceeds=abs(delta) > tolerance
    )


class AmountGuard:
    """
    Sanity limits per client

    Limits come from validation.default_limits and validation.limits.<CLIENT>
    (client labels are matched case-insensitively).
    """

    def __init__(
        self,
        default_limits: Optional[AmountLimits] = None,
        client_limits: Optional[Dict[str, AmountLimits]] = None,
        tolerance: Decimal = DEFAULT_TOLERANCE
    ):
        self.default_limits = default_limits or AmountLimits()
        self.client_limits = {k.upper(): v for k, v in (client_limits or {}).items()}
        self.tolerance = to_decimal(tolerance)

    @classmethod
    def from_config(cls, config: Optional[BillexConfig] = None) -> 'AmountGuard':
        config = config or BillexConfig()
        default_limits = AmountLimits.from_dict(config.get('validation.default_limits', {}) or {})
        client_limits = {
            label: AmountLimits.from_dict(limits or {}, default_limits)
            for label, limits in (config.get('validation.limits', {}) or {}).items()
        }
        return cls(
            default_limits=default_limits,
            client_limits=client_limits,
            tolerance=to_decimal(config.get('validation.discrepancy_tolerance', DEFAULT_TOLERANCE))
        )

    def limits_for(self, client_label: Optional[str]) -> AmountLimits:
        if client_label and client_label.upper() in self.client_limits:
            return self.client_limits[client_label.upper()]
        return self.default_limits

    def validate_amount(
        self,
        computed_total: Any,
        client_label: Optional[str] = None,
        context_label: str = 'the total'
    ) -> None:
        """
        Reject amounts outside the client's sanity limits

        Raises:
            ValidationError: NaN or unparseable amount, or outside [min, max]
        """
        limits = self.limits_for(client_label)
        try:
            amount = to_decimal(computed_total)
        except ValueError:
            amount = None

        if amount is None or amount.is_nan():
            logger.error(f"Invalid amount for {context_label} ({client_label}): {computed_total!r}")
            raise ValidationError(
                f"Invalid amount (NaN) for {context_label}; the source document was probably misparsed",
                amount=None,
                client_label=client_label,
                context_label=context_label
            )

        if amount < limits.min:
            logger.error(f"Amount {amount} for {context_label} ({client_label}) below minimum {limits.min}")
            raise ValidationError(
                f"Amount for {context_label} (${amount:,.2f}) is below the minimum allowed (${limits.min:,.2f})",
                amount=amount,
                client_label=client_label,
                context_label=context_label,
                limit=limits.min
            )

        if amount > limits.max:
            logger.error(f"Amount {amount} for {context_label} ({client_label}) exceeds maximum {limits.max}")
            raise ValidationError(
                f"Amount for {context_label} (${amount:,.2f}) exceeds the maximum allowed (${limits.max:,.2f}). "
                f"Check the amount column, the number format and for duplicated rows.",
                amount=amount,
                client_label=client_label,
                context_label=context_label,
                limit=limits.max
            )

        logger.debug(f"Amount {amount} for {context_label} ({client_label}) within limits")

    def detect_discrepancy(
        self,
        computed_total: Decimal,
        declared_total: Optional[Decimal],
        tolerance: Optional[Decimal] = None
    ) -> DiscrepancyReport:
        return detect_discrepancy(
            computed_total,
            declared_total,
            self.tolerance if tolerance is None else tolerance
        )

    def review(self, line_item: CanonicalLineItem, client_label: Optional[str] = None) -> LineItemReview:
        """Amount check plus discrepancy for one line item; never raises"""
        client_label = client_label or line_item.client_label
        error = None
        try:
            self.validate_amount(
                line_item.computed_total,
                client_label,
                f"section {line_item.source_label}"
            )
        except ValidationError as e:
            error = str(e)

        return LineItemReview(
            source_label=line_item.source_label,
            computed_total=line_item.computed_total,
            declared_total=line_item.declared_total,
            discrepancy=self.detect_discrepancy(line_item.computed_total, line_item.declared_total),
            error=error
        )

    def review_all(self, line_items: List[CanonicalLineItem], client_label: Optional[str] = None) -> List[LineItemReview]:
        return [self.review(item, client_label) for item in line_items]
