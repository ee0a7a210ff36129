"""
Test Fixtures and Utilities

This module provides:
- FakeTransactionRemote: scriptable in-memory remote
- Builders for synthetic transactions, drafts and page responses

All test data is synthetic and does not contain real financial information.
"""
