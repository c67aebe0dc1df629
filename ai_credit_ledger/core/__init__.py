"""
Core modules for AI Credit Ledger.

This package contains period calculation, credit conversion, the
allowance manager, the usage ledger and the status reader.
"""
