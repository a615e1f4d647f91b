"""
Billex: batch invoice generation engine
"""

__version__ = "0.1.0"

from billex.config.billex_config import BillexConfig
from billex.engine import BillexEngine, PreparedBatch

__all__ = ['BillexConfig', 'BillexEngine', 'PreparedBatch', '__version__']
