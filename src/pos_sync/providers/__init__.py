"""
POS provider adapters.

One ``PosAdapter`` implementation per provider; the engine only ever talks
to the abstract interface.
"""

from pos_sync.providers.base import PosAdapter
from pos_sync.providers.factory import create_adapter, ADAPTERS

__all__ = ["PosAdapter", "create_adapter", "ADAPTERS"]
