"""
crm_sync.storage - Local contact storage

SQLite-backed contact table, cross-references and run history.
"""

from crm_sync.storage.db import ContactStore, LocalStoreError

__all__ = ["ContactStore", "LocalStoreError"]
