"""
Tests: Repository filters, uniqueness and increments.

Run with:
    pytest proposal_engine/tests/test_repository.py -v
"""

from unittest.mock import MagicMock

import pytest
from pymongo.errors import DuplicateKeyError

from proposal_engine.exceptions import AtomicIncrementUnavailable, DuplicateRowError
from proposal_engine.persistence.repository import InMemoryRepository, MongoRepository


@pytest.fixture
def repo():
    r = InMemoryRepository()
    for i, status in enumerate(["active", "active", "expired", None]):
        r.insert("codes", {"id": f"c{i}", "uses": i * 10, "status": status})
    return r


class TestFilters:
    def test_equality(self, repo):
        assert [r["id"] for r in repo.fetch_many("codes", {"status": "active"})] == ["c0", "c1"]

    def test_operators(self, repo):
        assert len(repo.fetch_many("codes", {"status": {"$in": ["active", "expired"]}})) == 3
        assert len(repo.fetch_many("codes", {"status": {"$ne": "active"}})) == 2
        assert [r["id"] for r in repo.fetch_many("codes", {"uses": {"$gte": 10, "$lt": 30}})] == ["c1", "c2"]
        assert [r["id"] for r in repo.fetch_many("codes", {"uses": {"$gt": 20}})] == ["c3"]
        assert [r["id"] for r in repo.fetch_many("codes", {"uses": {"$lte": 0}})] == ["c0"]

    def test_range_never_matches_missing_value(self, repo):
        repo.insert("codes", {"id": "c9"})
        assert "c9" not in [r["id"] for r in repo.fetch_many("codes", {"uses": {"$gte": 0}})]

    def test_unsupported_operator(self, repo):
        with pytest.raises(ValueError, match="Unsupported filter operator"):
            repo.fetch_many("codes", {"uses": {"$regex": "1"}})

    def test_order_and_limit(self, repo):
        rows = repo.fetch_many("codes", order_by="uses", descending=True, limit=2)
        assert [r["id"] for r in rows] == ["c3", "c2"]

    def test_missing_sort_values_last(self, repo):
        rows = repo.fetch_many("codes", order_by="status")
        assert rows[-1]["id"] == "c3"

    def test_unknown_table_is_empty(self, repo):
        assert repo.fetch_many("nothing") == []
        assert repo.fetch_one("nothing", {"id": "x"}) is None


class TestWrites:
    def test_rows_are_copied(self, repo):
        row = {"id": "n1", "tags": ["a"]}
        repo.insert("codes", row)
        row["tags"].append("b")
        fetched = repo.fetch_one("codes", {"id": "n1"})
        fetched["tags"].append("c")
        assert repo.fetch_one("codes", {"id": "n1"})["tags"] == ["a"]

    def test_update_and_delete_counts(self, repo):
        assert repo.update("codes", {"status": "active"}, {"status": "paused"}) == 2
        assert repo.delete("codes", {"status": "paused"}) == 2
        assert len(repo.fetch_many("codes")) == 2

    def test_upsert(self, repo):
        created = repo.upsert("usage", {"org_id": "o1"}, {"count": 1})
        assert created == {"org_id": "o1", "count": 1}
        updated = repo.upsert("usage", {"org_id": "o1"}, {"count": 5})
        assert updated["count"] == 5
        assert len(repo.fetch_many("usage")) == 1

    def test_unique_index(self, repo):
        repo.ensure_unique("assignments", ("test_id", "user_id"))
        repo.ensure_unique("assignments", ("test_id", "user_id"))
        repo.insert("assignments", {"test_id": "t", "user_id": "u", "variant": "a"})
        repo.insert("assignments", {"test_id": "t", "user_id": "v", "variant": "a"})
        with pytest.raises(DuplicateRowError):
            repo.insert("assignments", {"test_id": "t", "user_id": "u", "variant": "b"})
        with pytest.raises(DuplicateRowError):
            repo.update("assignments", {"user_id": "v"}, {"user_id": "u"})
        assert repo.update("assignments", {"user_id": "u"}, {"variant": "c"}) == 1


class TestIncrement:
    def test_increment(self, repo):
        updated = repo.increment("codes", {"id": "c1"}, {"uses": 1, "redeemed": 2})
        assert updated["uses"] == 11
        assert updated["redeemed"] == 2

    def test_no_match(self, repo):
        assert repo.increment("codes", {"id": "zzz"}, {"uses": 1}) is None

    def test_unavailable(self):
        repo = InMemoryRepository(atomic_increments=False)
        with pytest.raises(AtomicIncrementUnavailable):
            repo.increment("codes", {"id": "c1"}, {"uses": 1})


class TestMongoRepository:
    def test_projection_hides_object_id(self):
        db = MagicMock()
        repo = MongoRepository(db)
        repo.fetch_one("codes", {"id": "c1"})
        db["codes"].find_one.assert_called_once_with({"id": "c1"}, {"_id": 0})

    def test_duplicate_key_translated(self):
        db = MagicMock()
        db["assignments"].insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
        with pytest.raises(DuplicateRowError):
            MongoRepository(db).insert("assignments", {"test_id": "t", "user_id": "u"})

    def test_insert_does_not_leak_object_id(self):
        db = MagicMock()
        row = {"id": "c1"}
        returned = MongoRepository(db).insert("codes", row)
        assert "_id" not in row
        assert "_id" not in returned

    def test_increment_uses_inc(self):
        db = MagicMock()
        MongoRepository(db).increment("usage", {"org_id": "o1"}, {"proposals_this_month": 1})
        args, kwargs = db["usage"].find_one_and_update.call_args
        assert args == ({"org_id": "o1"}, {"$inc": {"proposals_this_month": 1}})
        assert kwargs["projection"] == {"_id": 0}

    def test_unique_index(self):
        db = MagicMock()
        MongoRepository(db).ensure_unique("assignments", ("test_id", "user_id"))
        db["assignments"].create_index.assert_called_once_with([("test_id", 1), ("user_id", 1)], unique=True)
