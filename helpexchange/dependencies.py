"""
Dependency wiring: one lazily built client per concern, shared afterwards.
"""

from __future__ import annotations

import logging

from helpexchange.capabilities import (
    LoggingSmsSender,
    PasslibPasswordHasher,
    PasswordHasher,
    SmsSender,
)
from helpexchange.config import Settings, get_settings
from helpexchange.db import DbClient
from helpexchange.errors import BackendUnavailable
from helpexchange.memory import InMemoryDbClient
from helpexchange.snapshot import SnapshotDbClient
from helpexchange.sql import PostgresDbClient
from helpexchange.storage import InMemoryObjectStore, ObjectStore, S3ObjectStore

logger = logging.getLogger(__name__)

_db_client: DbClient | None = None
_object_store: ObjectStore | None = None
_sms_sender: SmsSender | None = None
_password_hasher: PasswordHasher | None = None


def _local_db_client(settings: Settings) -> DbClient:
    if settings.snapshot_path:
        logger.info("Using snapshot storage at %s", settings.snapshot_path)
        return SnapshotDbClient(settings.snapshot_path)
    logger.info("Using transient in-memory storage")
    return InMemoryDbClient()


def get_db_client() -> DbClient:
    """
    Return a singleton DB client; the backend is chosen on first use.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = _local_db_client(settings)
    else:
        try:
            _db_client = PostgresDbClient(settings.database_url)
            logger.info("Using relational storage")
        except BackendUnavailable:
            logger.warning(
                "Database unavailable, falling back to local storage", exc_info=True
            )
            _db_client = _local_db_client(settings)
    return _db_client


def get_object_store() -> ObjectStore:
    global _object_store
    if _object_store:
        return _object_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.cos_bucket:
        _object_store = InMemoryObjectStore()
    else:
        _object_store = S3ObjectStore(
            bucket=settings.cos_bucket,
            region=settings.cos_region or "",
            endpoint=settings.cos_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.storage_base_url,
        )
    return _object_store


def get_sms_sender() -> SmsSender:
    global _sms_sender
    if _sms_sender is None:
        _sms_sender = LoggingSmsSender()
    return _sms_sender


def get_password_hasher() -> PasswordHasher:
    global _password_hasher
    if _password_hasher is None:
        _password_hasher = PasslibPasswordHasher()
    return _password_hasher


def reset_clients() -> None:
    """Forget every singleton (useful in tests)."""
    global _db_client, _object_store, _sms_sender, _password_hasher
    _db_client = None
    _object_store = None
    _sms_sender = None
    _password_hasher = None
