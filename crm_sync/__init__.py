"""
crm_sync - Contact synchronization between a local CRM store and Google Contacts.

Reconciles a locally owned contact table with a remote contact directory
using stored cross-references, embedded source tags, and etag versioning.
"""

__version__ = "0.1.0"
