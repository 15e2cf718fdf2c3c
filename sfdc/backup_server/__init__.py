"""
Salesforce backup server - snapshots and point-in-time queries.

This package backs up a Salesforce org to local snapshot directories and
answers historical questions from them:
- Binary Downloader: retried, batched downloads of files and attachments
- Snapshot Writer: schema, records and files into one committed directory
- Job Manager: background runs with exported progress records
- Time Machine: nearest-snapshot queries, comparisons and record history

Architecture:
    ┌──────────────┐     ┌──────────────┐     ┌──────────────────┐
    │ RecordSource │────▶│   Snapshot   │────▶│  salesforce-     │
    │ (REST/memory)│     │    Writer    │     │  backup-<stamp>/ │
    └──────┬───────┘     └──────┬───────┘     └────────┬─────────┘
           │                    │                      │
           ▼                    ▼                      ▼
    ┌──────────────┐     ┌──────────────┐     ┌──────────────────┐
    │    Binary    │     │ Job Manager  │     │   Time Machine   │
    │  Downloader  │     │  jobId.lock  │     │ (read-only view) │
    └──────────────┘     └──────────────┘     └──────────────────┘

Invariants:
    - A snapshot exists only once backup-manifest.json is written
    - Snapshots are never modified after their manifest is written
    - The core only reaches the remote system through RecordSource
    - Time Machine operations return tagged results and never raise

How to change safely:
    - Add manifest and lock file keys, never rename or remove them
    - Snapshots written by older versions must stay queryable
"""

from ._version import __version__

__all__ = ["__version__"]
