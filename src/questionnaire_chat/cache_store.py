"""Persistence utilities for the cached questionnaire list."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

import redis
from redis import Redis
from redis.exceptions import RedisError

from .config import AppSettings, CacheBackend
from .models import Questionnaire, from_cache_dict, to_cache_dict

CACHE_KEY = "user_questionnaires"

logger = logging.getLogger(__name__)

Updater = Callable[[Questionnaire], Questionnaire]


class CacheStore(Protocol):
    """Key-value string store holding the serialized questionnaire list."""

    def read(self) -> Optional[str]:
        ...

    def write(self, value: str) -> None:
        ...


class InMemoryCacheStore:
    """Dictionary-backed store used by tests and ephemeral sessions."""

    def __init__(self, initial: Optional[str] = None) -> None:
        self._values: Dict[str, str] = {}
        if initial is not None:
            self._values[CACHE_KEY] = initial

    def read(self) -> Optional[str]:
        return self._values.get(CACHE_KEY)

    def write(self, value: str) -> None:
        self._values[CACHE_KEY] = value


class FileCacheStore:
    """Stores the questionnaire list as a single JSON document on disk."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> Optional[str]:
        if not self._path.exists():
            return None
        return self._path.read_text(encoding="utf-8")

    def write(self, value: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(value, encoding="utf-8")
        tmp_path.replace(self._path)


class RedisCacheStore:
    """Mirrors the browser key-value store into a Redis string key."""

    def __init__(self, redis_url: str, *, key: str = CACHE_KEY) -> None:
        self._redis_url = redis_url
        self._key = key
        self._redis: Optional[Redis] = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = redis.from_url(  # type: ignore[call-overload]
                self._redis_url,
                decode_responses=True,
            )
        return self._redis

    def read(self) -> Optional[str]:
        raw_value = self._get_redis().get(self._key)
        if raw_value is None:
            return None
        if isinstance(raw_value, bytes):
            return raw_value.decode("utf-8")
        return str(raw_value)

    def write(self, value: str) -> None:
        self._get_redis().set(self._key, value)


def create_cache_store(settings: AppSettings) -> CacheStore:
    """Build the store selected by ``QC_CACHE_BACKEND``."""

    if settings.cache_backend is CacheBackend.REDIS:
        if not settings.redis_url:
            raise RuntimeError("QC_REDIS_URL is required for the redis cache.")
        return RedisCacheStore(settings.redis_url)
    if settings.cache_backend is CacheBackend.MEMORY:
        return InMemoryCacheStore()
    return FileCacheStore(settings.cache_path)


_STORE_ERRORS = (OSError, RedisError, UnicodeError)


class QuestionnaireCache:
    """Read-modify-write access to the cached questionnaire list.

    Every mutation rewrites the whole array, so two writers racing on the
    same store resolve as last-writer-wins. Store failures are logged and
    never raised; callers keep their in-memory state.
    """

    def __init__(self, store: CacheStore) -> None:
        self._store = store

    def load_all(self) -> List[Questionnaire]:
        records: List[Questionnaire] = []
        for entry in self._load_raw():
            try:
                records.append(from_cache_dict(entry))
            except (ValueError, TypeError) as exc:
                logger.warning("Skipping malformed cached questionnaire: %s", exc)
        return records

    def find_by_id(self, questionnaire_id: str) -> Optional[Questionnaire]:
        for entry in self._load_raw():
            if str(entry.get("id")) != questionnaire_id:
                continue
            try:
                return from_cache_dict(entry)
            except (ValueError, TypeError) as exc:
                logger.warning(
                    "Cached questionnaire %s is malformed: %s",
                    questionnaire_id,
                    exc,
                )
                return None
        return None

    def upsert(
        self,
        questionnaire_id: str,
        updater: Updater,
        *,
        default: Optional[Questionnaire] = None,
    ) -> bool:
        """Replace the matching entry with ``updater(existing)``.

        When no entry matches and ``default`` is supplied, ``updater(default)``
        is appended instead. Returns ``True`` when the store was written.
        """

        entries = self._load_raw()
        updated = False
        for position, entry in enumerate(entries):
            if str(entry.get("id")) != questionnaire_id:
                continue
            try:
                current = from_cache_dict(entry)
            except (ValueError, TypeError) as exc:
                logger.warning(
                    "Replacing malformed cached questionnaire %s: %s",
                    questionnaire_id,
                    exc,
                )
                if default is None:
                    return False
                current = default.clone()
            entries[position] = dict(to_cache_dict(updater(current)))
            updated = True
            break
        if not updated:
            if default is None:
                return False
            entries.append(dict(to_cache_dict(updater(default.clone()))))
        return self._save_raw(entries)

    def put(self, questionnaire: Questionnaire) -> bool:
        snapshot = questionnaire.clone()
        return self.upsert(
            questionnaire.id,
            lambda _current: snapshot,
            default=snapshot,
        )

    def remove(self, questionnaire_id: str) -> bool:
        entries = self._load_raw()
        remaining = [
            entry for entry in entries if str(entry.get("id")) != questionnaire_id
        ]
        if len(remaining) == len(entries):
            return False
        return self._save_raw(remaining)

    def _load_raw(self) -> List[Dict[str, Any]]:
        try:
            raw_value = self._store.read()
        except _STORE_ERRORS as exc:
            logger.warning("Questionnaire cache read failed: %s", exc)
            return []
        if not raw_value:
            return []
        try:
            payload = json.loads(raw_value)
        except (json.JSONDecodeError, RecursionError) as exc:
            logger.warning("Questionnaire cache holds invalid JSON: %s", exc)
            return []
        if not isinstance(payload, list):
            logger.warning("Questionnaire cache is not a JSON array; ignoring.")
            return []
        return [entry for entry in payload if isinstance(entry, dict)]

    def _save_raw(self, entries: List[Dict[str, Any]]) -> bool:
        try:
            blob = json.dumps(entries, ensure_ascii=False)
            self._store.write(blob)
        except (TypeError, ValueError) as exc:
            logger.warning("Questionnaire cache could not be encoded: %s", exc)
            return False
        except _STORE_ERRORS as exc:
            logger.warning("Questionnaire cache write failed: %s", exc)
            return False
        return True
