"""SQLite-backed document store."""

from .document_store import (
    DocumentStore,
    DocumentStoreError,
    DuplicateKeyError,
    ReferencedDocumentError,
    StoredDocument,
    StoreNotInitializedError,
    StoreUnavailableError,
)

__all__ = [
    "DocumentStore",
    "DocumentStoreError",
    "DuplicateKeyError",
    "ReferencedDocumentError",
    "StoredDocument",
    "StoreNotInitializedError",
    "StoreUnavailableError",
]
