"""
Behavior every backend must share: CRUD, filters, counters, errors.

Each test runs once against JsonlStore and once against SqliteStore.
"""

import pytest

from conftest import NOW, make_record
from memrecall.errors import (
    ConflictingIdError,
    NotFoundError,
    RedactionRejectedError,
    ValidationError,
)
from memrecall.types import Expiry, RecordFilter, RelevanceHints

SECRET = "deploy with api_key=ABCDEF1234567890ABCDEF"


# ---------------------------------------------------------------------------
# Create / get
# ---------------------------------------------------------------------------


class TestCreateGet:
    def test_roundtrip(self, store):
        rec = make_record(
            id="MEM-one",
            tags=["testing", "ci"],
            relevance_hints=RelevanceHints(files=["src/app.py"], languages=["python"]),
            expiry=Expiry(ttl_secs=3600),
        )
        assert store.create(rec) == "MEM-one"
        got = store.get("MEM-one")
        assert got.to_dict() == rec.to_dict()

    def test_missing_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.get("MEM-nope")

    def test_not_found_is_key_error(self, store):
        with pytest.raises(KeyError):
            store.get("MEM-nope")

    def test_duplicate_id_conflicts(self, store):
        store.create(make_record(id="MEM-dup"))
        with pytest.raises(ConflictingIdError):
            store.create(make_record(id="MEM-dup", content="other"))
        assert store.get("MEM-dup").content == "Run tests before commit"

    def test_content_over_limit_rejected(self, store):
        with pytest.raises(ValidationError):
            store.create(make_record(content="x" * 300))
        assert store.list() == []

    def test_content_at_limit_accepted(self, store):
        rid = store.create(make_record(content="y" * 240))
        assert len(store.get(rid).content) == 240

    def test_empty_content_rejected(self, store):
        with pytest.raises(ValidationError):
            store.create(make_record(content="   "))

    def test_secret_rejected(self, store):
        with pytest.raises(RedactionRejectedError) as exc:
            store.create(make_record(content=SECRET))
        assert exc.value.issues
        assert store.list() == []

    def test_secret_override(self, store):
        rid = store.create(make_record(content=SECRET), allow_secrets=True)
        assert store.get(rid).content == SECRET

    def test_preserves_given_identity(self, store):
        rec = make_record(
            id="MEM-keep",
            created_at="2024-01-01T00:00:00+00:00",
            updated_at="2024-02-01T00:00:00+00:00",
            counters={"seen_count": 3, "used_count": 2, "last_used_at": "2024-02-01T00:00:00+00:00"},
        )
        store.create(rec)
        got = store.get("MEM-keep")
        assert got.created_at == "2024-01-01T00:00:00+00:00"
        assert got.updated_at == "2024-02-01T00:00:00+00:00"
        assert got.counters.used_count == 2


# ---------------------------------------------------------------------------
# Update / archive / delete
# ---------------------------------------------------------------------------


class TestUpdate:
    def test_partial_patch(self, store):
        store.create(make_record(id="MEM-u", tags=["a"]))
        updated = store.update("MEM-u", {"content": "Run lint before commit"})
        assert updated.content == "Run lint before commit"
        assert updated.tags == ["a"]
        assert updated.scope == "repo"
        assert store.get("MEM-u").content == "Run lint before commit"

    def test_updated_at_advances(self, store):
        store.create(make_record(id="MEM-u"))
        before = store.get("MEM-u")
        after = store.update("MEM-u", {"type": "instruction"})
        assert after.updated_at > before.updated_at
        assert after.created_at == before.created_at

    def test_nested_objects_accepted(self, store):
        store.create(make_record(id="MEM-u"))
        store.update("MEM-u", {
            "relevance_hints": RelevanceHints(modules=["core"]),
            "expiry": {"ttl_secs": 60},
        })
        got = store.get("MEM-u")
        assert got.relevance_hints.modules == ["core"]
        assert got.expiry.ttl_secs == 60

    def test_tags_deduplicated(self, store):
        store.create(make_record(id="MEM-u"))
        got = store.update("MEM-u", {"tags": ["b", "a", "b"]})
        assert got.tags == ["a", "b"]

    @pytest.mark.parametrize("field,value", [
        ("scope", "global"),
        ("id", "MEM-other"),
        ("created_at", "2020-01-01T00:00:00+00:00"),
        ("counters", {"used_count": 99}),
    ])
    def test_immutable_fields_rejected(self, store, field, value):
        store.create(make_record(id="MEM-u"))
        with pytest.raises(ValidationError):
            store.update("MEM-u", {field: value})
        got = store.get("MEM-u")
        assert got.scope == "repo"
        assert got.counters.used_count == 0

    def test_invalid_enum_rejected(self, store):
        store.create(make_record(id="MEM-u"))
        with pytest.raises(ValidationError):
            store.update("MEM-u", {"status": "deleted"})

    def test_missing_id_leaves_store_unchanged(self, store):
        store.create(make_record(id="MEM-a"))
        before = [r.to_dict() for r in store.list()]
        with pytest.raises(NotFoundError):
            store.update("MEM-missing", {"content": "new"})
        assert [r.to_dict() for r in store.list()] == before

    def test_too_long_update_rejected(self, store):
        store.create(make_record(id="MEM-u"))
        with pytest.raises(ValidationError):
            store.update("MEM-u", {"content": "z" * 241})
        assert store.get("MEM-u").content == "Run tests before commit"

    def test_secret_update_rejected_unless_allowed(self, store):
        store.create(make_record(id="MEM-u"))
        with pytest.raises(RedactionRejectedError):
            store.update("MEM-u", {"content": SECRET})
        assert store.update("MEM-u", {"content": SECRET}, allow_secrets=True).content == SECRET


class TestArchiveDelete:
    def test_archive_and_restore(self, store):
        store.create(make_record(id="MEM-a"))
        assert store.archive("MEM-a").status == "archived"
        assert store.archive("MEM-a", archived=False).status == "active"

    def test_archived_not_candidate(self, store):
        store.create(make_record(id="MEM-a"))
        store.archive("MEM-a")
        assert store.candidates_for_recall({"repo"}, NOW) == []

    def test_delete(self, store):
        store.create(make_record(id="MEM-a"))
        store.create(make_record(id="MEM-b"))
        store.delete("MEM-a")
        assert [r.id for r in store.list()] == ["MEM-b"]
        with pytest.raises(NotFoundError):
            store.get("MEM-a")

    def test_delete_missing(self, store):
        with pytest.raises(NotFoundError):
            store.delete("MEM-missing")


# ---------------------------------------------------------------------------
# List / filters / stats
# ---------------------------------------------------------------------------


@pytest.fixture
def populated(store):
    store.create(make_record(id="MEM-1", created_at="2025-01-03T00:00:00+00:00",
                             scope="repo", type="pref", tags=["style"]))
    store.create(make_record(id="MEM-2", created_at="2025-01-01T00:00:00+00:00",
                             scope="global", type="fact", tags=["env"]))
    store.create(make_record(id="MEM-3", created_at="2025-01-02T00:00:00+00:00",
                             scope="dir", type="note", status="archived",
                             tags=["style", "old"]))
    return store


class TestList:
    def test_default_order_created_ascending(self, populated):
        assert [r.id for r in populated.list()] == ["MEM-2", "MEM-3", "MEM-1"]

    def test_created_desc(self, populated):
        ids = [r.id for r in populated.list(RecordFilter(order="created_desc"))]
        assert ids == ["MEM-1", "MEM-3", "MEM-2"]

    def test_same_timestamp_ties_break_on_id(self, store):
        for rid in ("MEM-c", "MEM-a", "MEM-b"):
            store.create(make_record(id=rid))
        assert [r.id for r in store.list()] == ["MEM-a", "MEM-b", "MEM-c"]

    @pytest.mark.parametrize("flt,expected", [
        (RecordFilter(scope="global"), ["MEM-2"]),
        (RecordFilter(status="archived"), ["MEM-3"]),
        (RecordFilter(type="pref"), ["MEM-1"]),
        (RecordFilter(tags=["style"]), ["MEM-3", "MEM-1"]),
        (RecordFilter(tags=["env", "old"]), ["MEM-2", "MEM-3"]),
        (RecordFilter(status="active", tags=["style"]), ["MEM-1"]),
        (RecordFilter(limit=2), ["MEM-2", "MEM-3"]),
    ])
    def test_filters(self, populated, flt, expected):
        assert [r.id for r in populated.list(flt)] == expected

    def test_invalid_filter_value(self):
        with pytest.raises(ValidationError):
            RecordFilter(scope="team")

    def test_stats(self, populated):
        stats = populated.stats()
        assert stats["backend"] == populated.backend_name
        assert stats["total"] == 3
        assert stats["by_scope"] == {"global": 1, "repo": 1, "dir": 1}
        assert stats["by_status"] == {"active": 2, "archived": 1}
        assert stats["corrupt"] == 0

    def test_stats_total_matches_list(self, populated):
        populated.delete("MEM-2")
        assert populated.stats()["total"] == len(populated.list())

    def test_empty_store(self, store):
        assert store.list() == []
        assert store.stats()["total"] == 0

    def test_mixed_offsets_order_chronologically(self, store):
        store.create(make_record(id="beta", created_at="2024-01-01T08:00:00+00:00"))
        store.create(make_record(id="alpha", created_at="2024-01-01T12:00:00+05:00"))
        assert [r.id for r in store.list()] == ["alpha", "beta"]
        ids = [r.id for r in store.list(RecordFilter(order="created_desc"))]
        assert ids == ["beta", "alpha"]
        assert store.get("alpha").created_at == "2024-01-01T07:00:00+00:00"


# ---------------------------------------------------------------------------
# Recall support
# ---------------------------------------------------------------------------


class TestCandidates:
    def test_scope_filter(self, populated):
        ids = {r.id for r in populated.candidates_for_recall({"repo", "global"}, NOW)}
        assert ids == {"MEM-1", "MEM-2"}

    def test_expired_excluded(self, store):
        store.create(make_record(id="MEM-old", expiry=Expiry(at="2025-05-15T00:00:00+00:00")))
        store.create(make_record(id="MEM-ttl", expiry=Expiry(ttl_secs=60)))
        store.create(make_record(id="MEM-live", expiry=Expiry(at="2030-01-01T00:00:00+00:00")))
        ids = [r.id for r in store.candidates_for_recall({"repo"}, NOW)]
        assert ids == ["MEM-live"]

    def test_invalid_scope(self, store):
        with pytest.raises(ValidationError):
            store.candidates_for_recall({"team"}, NOW)


class TestRecordUsage:
    def test_used_and_seen(self, store):
        store.create(make_record(id="MEM-a"))
        store.create(make_record(id="MEM-b"))
        assert store.record_usage(["MEM-a"], ["MEM-b"], NOW) == 2
        a, b = store.get("MEM-a"), store.get("MEM-b")
        assert (a.counters.used_count, a.counters.seen_count) == (1, 0)
        assert a.counters.last_used_at == NOW
        assert (b.counters.used_count, b.counters.seen_count) == (0, 1)
        assert b.counters.last_used_at is None

    def test_missing_ids_ignored(self, store):
        store.create(make_record(id="MEM-a"))
        assert store.record_usage(["MEM-a", "MEM-gone"], [], NOW) == 1

    def test_counters_accumulate(self, store):
        store.create(make_record(id="MEM-a"))
        for _ in range(3):
            store.record_usage(["MEM-a"], [], NOW)
        assert store.get("MEM-a").counters.used_count == 3

    def test_noop(self, store):
        assert store.record_usage([], [], NOW) == 0


# ---------------------------------------------------------------------------
# Compaction / context manager
# ---------------------------------------------------------------------------


class TestCompact:
    def test_keeps_records(self, populated):
        before = [r.to_dict() for r in populated.list()]
        result = populated.compact()
        assert result.dropped == 0
        assert [r.to_dict() for r in populated.list()] == before

    def test_drops_only_expired_archived(self, store):
        past = Expiry(at="2025-05-02T00:00:00+00:00")
        store.create(make_record(id="MEM-active-expired", expiry=past))
        store.create(make_record(id="MEM-archived-expired", status="archived", expiry=past))
        store.create(make_record(id="MEM-archived", status="archived"))
        result = store.compact(drop_expired_archived=True, now=NOW)
        assert result.dropped == 1
        assert [r.id for r in store.list()] == [
            "MEM-active-expired", "MEM-archived",
        ]

    def test_idempotent(self, populated):
        populated.compact()
        second = populated.compact()
        assert second.dropped == 0
        assert second.read == second.written == 3


class TestContextManager:
    def test_with_block(self, tmp_path):
        from conftest import open_backend

        for kind in ("jsonl", "sqlite"):
            with open_backend(kind, tmp_path, name=f"ctx-{kind}") as s:
                s.create(make_record(id="MEM-x"))
            with open_backend(kind, tmp_path, name=f"ctx-{kind}") as s:
                assert s.get("MEM-x").id == "MEM-x"
