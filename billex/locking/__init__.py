from .lock_service import LockService, LockHandle, LockEntry, folio_lock_key

__all__ = ['LockService', 'LockHandle', 'LockEntry', 'folio_lock_key']
