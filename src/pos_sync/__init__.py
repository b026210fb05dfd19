"""
POS Sync

Point-of-sale integration engine. Connects a tenant's external POS account
over OAuth and keeps catalog and inventory data consistent between the POS
and the platform's product store, in both directions, under provider rate
limits.
"""

__version__ = "1.0.0"
__author__ = "POS Sync Team"
