"""
Backup Server Test Suite.

This package contains:
- unit/: Unit tests (SQLite files, in-memory store)
- integration/: Engines, service, HTTP API and CLI end to end
- e2e/: S3 store against MinIO (set BACKUP_E2E_TESTS=1)
"""
