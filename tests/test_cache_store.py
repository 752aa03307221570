from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from questionnaire_chat.cache_store import (
    CACHE_KEY,
    FileCacheStore,
    InMemoryCacheStore,
    QuestionnaireCache,
    RedisCacheStore,
    create_cache_store,
)
from questionnaire_chat.config import CacheBackend
from questionnaire_chat.models import (
    GENERATING_PLACEHOLDER,
    Questionnaire,
    QuestionAnswer,
    QuestionnaireStatus,
    to_cache_dict,
)


def _record(questionnaire_id: str = "q1", *answers: str) -> Questionnaire:
    texts = answers or ("Yes", "")
    return Questionnaire(
        id=questionnaire_id,
        name=f"Questionnaire {questionnaire_id}",
        due_date="2/1/2026",
        created_at="2026-01-05T10:00:00Z",
        answers=[
            QuestionAnswer(question=f"Question {index}?", answer=text)
            for index, text in enumerate(texts)
        ],
    ).refresh_progress()


class _BrokenStore:
    def read(self):
        raise OSError("disk unavailable")

    def write(self, value):
        raise OSError("disk unavailable")


class TestQuestionnaireCache:
    def test_put_then_find_round_trips(self, cache: QuestionnaireCache):
        record = _record()

        assert cache.put(record) is True

        restored = cache.find_by_id("q1")
        assert restored == record
        assert restored is not record
        assert to_cache_dict(restored) == to_cache_dict(record)

    def test_put_replaces_existing_entry_in_place(self, cache: QuestionnaireCache):
        cache.put(_record("q1"))
        cache.put(_record("q2"))

        cache.put(_record("q1", "Yes", "No"))

        records = cache.load_all()
        assert [record.id for record in records] == ["q1", "q2"]
        assert records[0].progress == 100

    def test_missing_store_value_is_empty(self, cache: QuestionnaireCache):
        assert cache.load_all() == []
        assert cache.find_by_id("q1") is None

    @pytest.mark.parametrize("raw", ["{not json", '{"id": "q1"}', "42"])
    def test_unreadable_payload_is_treated_as_empty(self, raw):
        cache = QuestionnaireCache(InMemoryCacheStore(initial=raw))

        assert cache.load_all() == []
        assert cache.find_by_id("q1") is None

    @pytest.mark.parametrize(
        "raw",
        [
            '[{"id": "q1", "status": 5, "answers": []}]',
            '[{"id": "q1", "status": ["Draft"], "answers": []}]',
            '[{"id": "q1", "progress": Infinity, "answers": []}]',
            '[{"id": "q1", "progress": NaN, "answers": []}]',
        ],
    )
    def test_odd_field_types_fall_back_to_derived_values(self, raw):
        cache = QuestionnaireCache(InMemoryCacheStore(initial=raw))

        (record,) = cache.load_all()
        found = cache.find_by_id("q1")

        assert record.id == "q1"
        assert found is not None
        assert found.progress == 0
        assert found.status is QuestionnaireStatus.NOT_STARTED
        assert cache.upsert("q1", lambda current: current.refresh_progress()) is True

    def test_deeply_nested_payload_is_treated_as_empty(self):
        raw = "[" * 100_000 + "]" * 100_000
        cache = QuestionnaireCache(InMemoryCacheStore(initial=raw))

        assert cache.load_all() == []
        assert cache.find_by_id("q1") is None

    def test_malformed_entries_are_skipped(self):
        raw = json.dumps([{"name": "no id"}, to_cache_dict(_record("q2"))])
        cache = QuestionnaireCache(InMemoryCacheStore(initial=raw))

        assert [record.id for record in cache.load_all()] == ["q2"]

    def test_upsert_without_match_or_default_is_a_no_op(
        self, cache: QuestionnaireCache, store: InMemoryCacheStore
    ):
        written = cache.upsert("missing", lambda record: record)

        assert written is False
        assert store.read() is None

    def test_upsert_with_default_appends(self, cache: QuestionnaireCache):
        cache.put(_record("q1"))

        def rename(record: Questionnaire) -> Questionnaire:
            record.name = "Renamed"
            return record

        written = cache.upsert("q2", rename, default=_record("q2"))

        assert written is True
        assert [record.name for record in cache.load_all()] == [
            "Questionnaire q1",
            "Renamed",
        ]

    def test_upsert_updates_matching_entry(self, cache: QuestionnaireCache):
        cache.put(_record("q1"))

        def answer_second(record: Questionnaire) -> Questionnaire:
            record.answers[1].apply_manual("Nightly")
            return record.refresh_progress()

        cache.upsert("q1", answer_second)

        stored = cache.find_by_id("q1")
        assert stored is not None
        assert stored.answers[1].answer == "Nightly"
        assert stored.progress == 100

    def test_remove(self, cache: QuestionnaireCache):
        cache.put(_record("q1"))
        cache.put(_record("q2"))

        assert cache.remove("q1") is True
        assert cache.remove("q1") is False
        assert [record.id for record in cache.load_all()] == ["q2"]

    def test_loading_flags_and_placeholders_are_not_persisted(
        self, cache: QuestionnaireCache, store: InMemoryCacheStore
    ):
        record = _record("q1", "Yes", "")
        record.answers[1].mark_pending(GENERATING_PLACEHOLDER)

        cache.put(record)

        stored = json.loads(store.read())
        answer = stored[0]["answers"][1]
        assert "isLoading" not in answer
        assert answer["answer"] == ""
        assert answer["needsAttention"] is True

    def test_unknown_keys_survive_updates(self, store: InMemoryCacheStore):
        entry = dict(to_cache_dict(_record("q1")))
        entry["vendorId"] = "v-9"
        store.write(json.dumps([entry]))
        cache = QuestionnaireCache(store)

        cache.upsert("q1", lambda record: record.refresh_progress())

        assert json.loads(store.read())[0]["vendorId"] == "v-9"

    def test_store_failures_are_logged_not_raised(self, caplog):
        cache = QuestionnaireCache(_BrokenStore())

        assert cache.load_all() == []
        assert cache.put(_record()) is False
        assert "Questionnaire cache" in caplog.text


class TestFileCacheStore:
    def test_write_creates_parent_directories(self, tmp_path: Path):
        path = tmp_path / "outputs" / "user_questionnaires.json"
        cache = QuestionnaireCache(FileCacheStore(path))

        cache.put(_record())

        assert path.exists()
        assert not path.with_suffix(".json.tmp").exists()
        assert json.loads(path.read_text(encoding="utf-8"))[0]["id"] == "q1"

    def test_missing_file_reads_as_none(self, tmp_path: Path):
        assert FileCacheStore(tmp_path / "absent.json").read() is None


class TestRedisCacheStore:
    def test_reads_and_writes_single_key(self):
        client = MagicMock()
        client.get.return_value = json.dumps([to_cache_dict(_record())])

        with patch("questionnaire_chat.cache_store.redis.from_url", return_value=client) as factory:
            store = RedisCacheStore("redis://cache.test:6379/0")
            cache = QuestionnaireCache(store)
            records = cache.load_all()
            cache.remove("q1")

        factory.assert_called_once_with("redis://cache.test:6379/0", decode_responses=True)
        client.get.assert_called_with(CACHE_KEY)
        assert [record.id for record in records] == ["q1"]
        client.set.assert_called_once_with(CACHE_KEY, "[]")

    def test_connection_errors_are_swallowed(self):
        client = MagicMock()
        client.get.side_effect = RedisConnectionError("refused")

        with patch("questionnaire_chat.cache_store.redis.from_url", return_value=client):
            cache = QuestionnaireCache(RedisCacheStore("redis://cache.test:6379/0"))

            assert cache.load_all() == []


class TestCreateCacheStore:
    def test_memory_backend(self, settings):
        assert isinstance(create_cache_store(settings), InMemoryCacheStore)

    def test_file_backend(self, settings):
        settings.cache_backend = CacheBackend.FILE

        store = create_cache_store(settings)

        assert isinstance(store, FileCacheStore)
        assert store.path == settings.cache_path

    def test_redis_backend_requires_url(self, settings):
        settings.cache_backend = CacheBackend.REDIS

        with pytest.raises(RuntimeError):
            create_cache_store(settings)
