from .connection import Database, Base, get_base
from .models import IssuedInvoice, JobRecord

__all__ = ['Database', 'Base', 'get_base', 'IssuedInvoice', 'JobRecord']
