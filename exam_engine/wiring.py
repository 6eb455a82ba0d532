from __future__ import annotations

from functools import lru_cache

from exam_engine.catalog.client import Catalog
from exam_engine.catalog.inmemory import InMemoryCatalog
from exam_engine.catalog.mongo import MongoCatalog
from exam_engine.engine.clock import SessionClock
from exam_engine.engine.lifecycle import AttemptLifecycleController
from exam_engine.settings import settings
from exam_engine.storage.inmemory import InMemoryAttemptRepository
from exam_engine.storage.mongo import MongoAttemptRepository
from exam_engine.storage.repo import AttemptRepository


def _backend() -> str:
    return (settings.storage_backend or "inmemory").lower()


@lru_cache
def get_catalog() -> Catalog:
    if _backend() == "mongo":
        return MongoCatalog(settings.mongodb_uri, settings.mongodb_db, settings.exam_enabled_config_key)
    return InMemoryCatalog(settings.exam_enabled_config_key)


@lru_cache
def get_repo() -> AttemptRepository:
    if _backend() == "mongo":
        return MongoAttemptRepository(settings.mongodb_uri, settings.mongodb_db)
    return InMemoryAttemptRepository()


@lru_cache
def get_engine() -> AttemptLifecycleController:
    return AttemptLifecycleController(
        get_repo(),
        get_catalog(),
        SessionClock(skew_tolerance_seconds=settings.clock_skew_tolerance_seconds),
        expiry_grace_seconds=settings.expiry_grace_seconds,
        reject_late_checkpoints=settings.reject_late_checkpoints,
        checkpoint_retry_attempts=settings.checkpoint_retry_attempts,
    )
