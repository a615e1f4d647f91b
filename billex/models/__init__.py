from .invoice import (
    ServiceEntry,
    CanonicalLineItem,
    DiscrepancyReport,
    InvoiceStatus,
    InvoiceResult,
    BatchGenerationReport,
    to_decimal,
    money,
)
from .batch import Batch
from .job import JobStatus, AsyncJob, JobOutcome

__all__ = [
    'ServiceEntry',
    'CanonicalLineItem',
    'DiscrepancyReport',
    'InvoiceStatus',
    'InvoiceResult',
    'BatchGenerationReport',
    'Batch',
    'JobStatus',
    'AsyncJob',
    'JobOutcome',
    'to_decimal',
    'money',
]
