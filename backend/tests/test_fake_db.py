"""
The in-memory database the suite runs against: each MongoDB behaviour the
engine's guarantees lean on, checked so drift from the real driver shows up here.
"""
import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from conftest import FakeCollection

pytestmark = pytest.mark.asyncio


def collection(*docs):
    coll = FakeCollection("things")
    coll.seed(*docs)
    return coll


class TestMatching:
    async def test_none_matches_null_and_missing(self):
        coll = collection({"k": 1, "v": None}, {"k": 2}, {"k": 3, "v": 0})
        assert await coll.count_documents({"v": None}) == 2

    async def test_scalar_matches_array_element(self):
        coll = collection({"cycles": ["MONTHLY", "YEARLY"]})
        assert await coll.count_documents({"cycles": "YEARLY"}) == 1

    async def test_ranges_skip_null_and_missing(self):
        coll = collection({"v": None}, {}, {"v": 3})
        assert await coll.count_documents({"v": {"$lt": 10}}) == 1
        assert await coll.count_documents({"v": {"$ne": None}}) == 1
        assert await coll.count_documents({"v": {"$in": [None]}}) == 2

    async def test_expr_null_sorts_lowest(self):
        coll = collection(
            {"k": "capped", "used_count": 4, "limit_total": 5},
            {"k": "full", "used_count": 5, "limit_total": 5},
            {"k": "no-cap", "used_count": 9, "limit_total": None},
        )
        found = await coll.find(
            {"$expr": {"$lt": ["$used_count", "$limit_total"]}}, {"_id": 0, "k": 1}
        ).to_list(10)
        assert found == [{"k": "capped"}]

    async def test_unknown_operator_refused(self):
        with pytest.raises(NotImplementedError):
            await collection({"v": "a"}).count_documents({"v": {"$regex": "a"}})


class TestUniqueIndexes:
    async def test_missing_field_indexed_as_null(self):
        coll = collection()
        coll.add_index("token", unique=True)
        await coll.insert_one({"k": 1})
        with pytest.raises(DuplicateKeyError) as exc:
            await coll.insert_one({"k": 2})
        assert exc.value.code == 11000
        assert len(coll.docs) == 1

    async def test_sparse_skips_missing(self):
        coll = collection()
        coll.add_index("provider_id", unique=True, sparse=True)
        await coll.insert_one({"k": 1})
        await coll.insert_one({"k": 2})
        await coll.insert_one({"provider_id": "sub_1"})
        with pytest.raises(DuplicateKeyError):
            await coll.insert_one({"provider_id": "sub_1"})

    async def test_update_violation_leaves_document(self):
        coll = collection({"slot": 1}, {"slot": 2})
        coll.add_index("slot", unique=True)
        with pytest.raises(DuplicateKeyError):
            await coll.update_one({"slot": 2}, {"$set": {"slot": 1}})
        assert sorted(d["slot"] for d in coll.docs) == [1, 2]


class TestUpserts:
    async def test_seeds_from_equality_fields(self):
        coll = collection()
        created = await coll.find_one_and_update(
            {"scope_key": "product:cat-1", "$or": [{"locked_until": None}]},
            {"$set": {"lock_owner": "a"}, "$setOnInsert": {"created": True}, "$inc": {"n": 1}},
            projection={"_id": 0},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        assert created == {"scope_key": "product:cat-1", "lock_owner": "a", "created": True, "n": 1}

    async def test_before_image(self):
        coll = collection({"k": 1, "n": 1})
        before = await coll.find_one_and_update({"k": 1}, {"$inc": {"n": 1}}, projection={"_id": 0, "n": 1})
        assert before == {"n": 1}
        assert coll.docs[0]["n"] == 2
