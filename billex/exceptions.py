"""
Billex exception hierarchy

Item-level errors (ParseError, ValidationError, ProviderError) are recovered
by the caller one section or line item at a time. Lock, store and gate errors
indicate systemic unavailability and propagate to whoever started the work.
"""

from decimal import Decimal
from typing import Optional


class BillexError(Exception):
    """Base class for all Billex errors"""


class ConfigurationError(BillexError):
    """Invalid or inconsistent configuration"""


class ParseError(BillexError):
    """Malformed or unsupported source document (or one section of it)"""

    def __init__(self, reason: str, section: Optional[str] = None):
        self.reason = reason
        self.section = section
        message = f"{section}: {reason}" if section else reason
        super().__init__(message)


class ValidationError(BillexError):
    """A computed amount is outside the sanity limits for a client"""

    def __init__(
        self,
        message: str,
        amount: Optional[Decimal] = None,
        client_label: Optional[str] = None,
        context_label: Optional[str] = None,
        limit: Optional[Decimal] = None
    ):
        self.amount = amount
        self.client_label = client_label
        self.context_label = context_label
        self.limit = limit
        super().__init__(message)


class LockError(BillexError):
    """Base class for lock service errors"""


class LockUnavailable(LockError):
    """The lock is currently held by someone else"""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Lock '{key}' is held by another owner")


class LockTimeoutError(LockError):
    """Lock acquisition retries were exhausted"""

    def __init__(self, key: str, attempts: int):
        self.key = key
        self.attempts = attempts
        super().__init__(f"Could not acquire lock '{key}' after {attempts} attempts")


class StoreError(BillexError):
    """Shared key-value store failure"""


class StoreUnavailable(StoreError):
    """Shared key-value store cannot be reached"""


class BatchStateError(BillexError):
    """Base class for batch state store errors"""

    def __init__(self, message: str, owner_id: Optional[str] = None, batch_id: Optional[str] = None):
        self.owner_id = owner_id
        self.batch_id = batch_id
        super().__init__(message)


class BatchNotFoundError(BatchStateError):
    """No batch stored under (owner, batch id), or it already expired in the store"""


class BatchExpiredError(BatchStateError):
    """The batch was found but its expiry time has passed"""


class ProviderError(BillexError):
    """The external invoicing provider call failed"""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class GenerationRejected(BillexError):
    """The tenant is not allowed to generate invoices right now"""

    def __init__(self, tenant_id: str, reason: Optional[str] = None):
        self.tenant_id = tenant_id
        self.reason = reason
        super().__init__(f"Invoice generation rejected for tenant {tenant_id}: {reason or 'not allowed'}")


class JobError(BillexError):
    """An async job could not be executed"""


class NotificationError(BillexError):
    """A notification could not be delivered"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
