"""
Database Layer for CaseTrail

Provides:
- DocumentStore abstraction (InMemory for dev, Postgres for prod)
- PostgreSQL schema
- Connection pooling and configuration
"""

from pathlib import Path

from .store import (
    ACTORS,
    CASEWORKERS,
    CASES,
    CASE_UPDATES,
    DOCUMENT_REFS,
    DocumentStore,
    InMemoryDocumentStore,
    PostgresDocumentStore,
    DocumentStoreError,
    DocumentNotFoundError,
    ConcurrencyError,
    DuplicateKeyError,
)
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

__all__ = [
    "ACTORS",
    "CASEWORKERS",
    "CASES",
    "CASE_UPDATES",
    "DOCUMENT_REFS",
    "DocumentStore",
    "InMemoryDocumentStore",
    "PostgresDocumentStore",
    "DocumentStoreError",
    "DocumentNotFoundError",
    "ConcurrencyError",
    "DuplicateKeyError",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
    "get_store_driver",
    "SCHEMA_PATH",
]
