"""
SDK for AI Credit Ledger.

Provides metered access to model providers.
"""

from .openai_client import MeteredOpenAI

__all__ = ["MeteredOpenAI"]
