from .provider import (
    InvoicingProvider,
    HttpInvoicingProvider,
    ProviderInvoice,
    TenantCredentials,
)
from .invoice_spec import InvoiceOptions, build_invoice_spec
from .tenant_gate import (
    TenantGate,
    GateDecision,
    AllowAllTenantGate,
    SubscriptionTenantGate,
    SubscriptionSnapshot,
)
from .ledger import InvoiceLedger
from .rate_limiter import RateLimiter, RateLimitConfig
from .artifacts import download_batch_artifacts
from .orchestrator import InvoiceOrchestrator

__all__ = [
    'InvoicingProvider',
    'HttpInvoicingProvider',
    'ProviderInvoice',
    'TenantCredentials',
    'InvoiceOptions',
    'build_invoice_spec',
    'TenantGate',
    'GateDecision',
    'AllowAllTenantGate',
    'SubscriptionTenantGate',
    'SubscriptionSnapshot',
    'InvoiceLedger',
    'RateLimiter',
    'RateLimitConfig',
    'download_batch_artifacts',
    'InvoiceOrchestrator',
]
