"""Integration tests for the voting service.

This package contains tests that run against a real PostgreSQL database:

- Ballot store round trips
- Conditional vote writes under concurrency
- Reminder scans based on row age

All tests are skipped when the database is not reachable.
"""
