from .billex_config import BillexConfig, validate_timing, worst_case_provider_latency, worst_case_rate_limit_wait
from .logging_setup import setup_logging

__all__ = [
    'BillexConfig',
    'validate_timing',
    'worst_case_provider_latency',
    'worst_case_rate_limit_wait',
    'setup_logging',
]
