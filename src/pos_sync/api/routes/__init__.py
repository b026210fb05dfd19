"""
API route modules.
"""

from . import health, integrations, sync

__all__ = ["health", "integrations", "sync"]
