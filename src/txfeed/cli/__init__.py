"""
Command Line Interface Package

Unified CLI for the transaction feed.

Command Structure:
- txfeed: Main entry point with utility commands (version, config)
- txfeed list: Filtered, paginated feed grouped by day
- txfeed add / txfeed delete: Mutations through the feed engine
"""
