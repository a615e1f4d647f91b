from .retry import RetryPolicy, retry_async
from .progress import ProgressReporter

__all__ = ['RetryPolicy', 'retry_async', 'ProgressReporter']
