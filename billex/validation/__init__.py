from .guard import AmountGuard, AmountLimits, LineItemReview, detect_discrepancy

__all__ = ['AmountGuard', 'AmountLimits', 'LineItemReview', 'detect_discrepancy']
