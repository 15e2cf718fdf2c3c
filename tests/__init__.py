"""
Backup server test suite.

This package contains:
- unit/: Unit tests (in-memory source, mocked HTTP transport, temp dirs)
- integration/: Backup jobs feeding real snapshots to the Time Machine
"""
