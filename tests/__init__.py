"""
Test Suite for txfeed

Test Structure:
- fixtures/: In-memory remote and synthetic transactions
- unit/: Unit tests mirroring src/ package structure
- integration/: Configuration and CLI tests

Test Data:
All test data is synthetic.
"""
