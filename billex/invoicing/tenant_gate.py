"""
Tenant/subscription gate consulted before any generation starts
"""

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

ALLOWED_STATUSES = ('active', 'trial')


@dataclass
class GateDecision:
    allowed: bool
    reason: Optional[str] = None
    subscription_status: Optional[str] = None


@dataclass
class SubscriptionSnapshot:
    """The subscription facts the gate needs about a tenant"""
    status: str
    invoices_used: int = 0
    invoice_limit: Optional[int] = None
    trial_ends_at: Optional[datetime] = None
    tenant_active: bool = True


class TenantGate(ABC):
    """Decides whether a tenant may generate invoices right now"""

    @abstractmethod
    async def is_generation_allowed(self, tenant_id: str) -> GateDecision:
        pass


class AllowAllTenantGate(TenantGate):
    """Gate for single-tenant and development setups"""

    async def is_generation_allowed(self, tenant_id: str) -> GateDecision:
        return GateDecision(allowed=True)


class SubscriptionTenantGate(TenantGate):
    """
    Gate driven by subscription state

    Args:
        lookup: tenant_id -> SubscriptionSnapshot or None (sync or async)
    """

    def __init__(self, lookup: Callable[[str], Any]):
        self.lookup = lookup

    async def is_generation_allowed(self, tenant_id: str) -> GateDecision:
        snapshot = self.lookup(tenant_id)
        if inspect.isawaitable(snapshot):
            snapshot = await snapshot

        if snapshot is None:
            return GateDecision(allowed=False, reason='no_subscription')

        status = (snapshot.status or '').lower()
        if not snapshot.tenant_active:
            decision = GateDecision(False, 'tenant_inactive', status)
        elif status not in ALLOWED_STATUSES:
            decision = GateDecision(False, f'subscription_{status or "unknown"}', status)
        elif status == 'trial' and snapshot.trial_ends_at is not None and \
                snapshot.trial_ends_at <= datetime.now(timezone.utc):
            decision = GateDecision(False, 'trial_expired', status)
        elif snapshot.invoice_limit is not None and snapshot.invoices_used >= snapshot.invoice_limit:
            decision = GateDecision(False, 'invoice_limit_reached', status)
        else:
            decision = GateDecision(True, None, status)

        if not decision.allowed:
            logger.info(f"Generation not allowed for tenant {tenant_id}: {decision.reason}")
        return decision
