"""
Transactions API Package

HTTP transport for the transaction feed engine.

This package provides:
- HttpTransactionRemote: requests-based TransactionRemote
- Token storage with transparent refresh on 401
- Mapping between API documents and domain models
"""

from .client import HttpTransactionRemote
from .mapping import (
    category_from_api,
    changes_to_api,
    draft_to_api,
    page_from_api,
    transaction_from_api,
)
from .tokens import TokenStore

__all__ = [
    "HttpTransactionRemote",
    "TokenStore",
    "category_from_api",
    "changes_to_api",
    "draft_to_api",
    "page_from_api",
    "transaction_from_api",
]
