from .state_store import BatchStateStore, batch_key

__all__ = ['BatchStateStore', 'batch_key']
