"""
HTTP surface of POS Sync.
"""
