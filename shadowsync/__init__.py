"""
shadowsync: one-way ownership mirror from a primary token registry to a
read-only shadow ledger.
"""

__version__ = "0.3.0"
