"""
chatbackup - encrypted backup and restore for messaging client data

Backs up a messaging client's local database and attachments to remote
storage, one encrypted blob per file, and restores them from an encrypted
manifest.

Key Features:
    - Per-file encryption keys; the manifest is protected by a job-level key
    - Job lifecycle with exactly-once success/failure delegate callbacks
    - Cooperative cancellation from any thread
    - Pluggable remote stores (local directory, HTTP)
"""

__version__ = "0.1.0"

from chatbackup.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
