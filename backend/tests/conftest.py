"""
Pytest configuration and shared test helpers for backend tests.

``fake_db`` swaps the Motor database for an in-memory stand-in that
implements the subset of the driver the engine uses, including unique and
sparse indexes, conditional updates and upserts. Every operation yields to
the event loop once before running atomically, so ``asyncio.gather`` races
interleave the way concurrent requests against MongoDB do.

MongoDB semantics it mirrors (test_fake_db.py pins each one):

- ``{"field": None}`` matches documents where the field is null or missing
- a scalar condition on an array field matches any element
- ``$ne``, ``$in`` and ``$nin`` treat a missing field as null
- ``$lt``/``$lte``/``$gt``/``$gte`` never match null or missing fields
- ``$exists``, plus ``$or`` / ``$and`` at the top level of a filter
- ``$expr`` with a single comparison (``$lt``, ``$lte``, ``$gt``, ``$gte``,
  ``$eq``) between ``"$field"`` references and literals; missing fields
  resolve to null, and null sorts below every other value
- upserts seed the new document from the filter's plain equality fields,
  then apply ``$set``, ``$setOnInsert``, ``$inc`` and ``$unset``
- unique indexes index a missing field as null, so two documents missing
  it collide; a sparse index skips documents missing every indexed field
- a unique violation raises ``DuplicateKeyError`` with code 11000 and
  leaves the collection unchanged, on insert, update and upsert alike
- ``find_one_and_update`` returns the BEFORE or AFTER image, projected
- sort puts null and missing values first when ascending

Anything else raises NotImplementedError rather than guessing.
"""
import asyncio
import copy
import hashlib
import hmac
import os
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app

from auth import create_access_token
from database import database, INDEXES
from services.entitlement_overrides import EntitlementOverrides
from services.entitlements import entitlement_checker

_MISSING = object()


# =============================================================================
# In-memory MongoDB stand-in
# =============================================================================

def _lookup(doc, path):
    value = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _is_operator_dict(cond):
    return isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond)


def _less_than(a, b):
    # Null sorts below every other value
    if a is None or b is None:
        return a is None and b is not None
    return a < b


def _resolve(doc, operand):
    if isinstance(operand, str) and operand.startswith("$"):
        value = _lookup(doc, operand[1:])
        return None if value is _MISSING else value
    return operand


def _eval_expr(doc, expr):
    (op, args), = expr.items()
    a, b = (_resolve(doc, arg) for arg in args)
    if op == "$lt":
        return _less_than(a, b)
    if op == "$lte":
        return a == b or _less_than(a, b)
    if op == "$gt":
        return _less_than(b, a)
    if op == "$gte":
        return a == b or _less_than(b, a)
    if op == "$eq":
        return a == b
    raise NotImplementedError(op)


def _match_condition(value, cond):
    if _is_operator_dict(cond):
        for op, arg in cond.items():
            present = value is not _MISSING
            current = value if present else None
            if op == "$ne":
                if current == arg:
                    return False
            elif op == "$in":
                if current not in arg:
                    return False
            elif op == "$nin":
                if current in arg:
                    return False
            elif op == "$exists":
                if present != bool(arg):
                    return False
            elif op in ("$lt", "$lte", "$gt", "$gte"):
                if current is None:
                    return False
                if op == "$lt" and not current < arg:
                    return False
                if op == "$lte" and not current <= arg:
                    return False
                if op == "$gt" and not current > arg:
                    return False
                if op == "$gte" and not current >= arg:
                    return False
            else:
                raise NotImplementedError(op)
        return True
    if cond is None:
        return value is _MISSING or value is None
    if value is _MISSING:
        return False
    if isinstance(value, list) and not isinstance(cond, list):
        return cond in value
    return value == cond


def matches(doc, flt):
    for key, cond in (flt or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in cond):
                return False
        elif key == "$expr":
            if not _eval_expr(doc, cond):
                return False
        elif not _match_condition(_lookup(doc, key), cond):
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        out = {k: doc[k] for k in included if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            out["_id"] = doc["_id"]
        return out
    for key, value in projection.items():
        if not value:
            doc.pop(key, None)
    return doc


def _apply_update(doc, update, inserting=False):
    for op, fields in update.items():
        if op == "$set":
            doc.update(copy.deepcopy(fields))
        elif op == "$setOnInsert":
            if inserting:
                doc.update(copy.deepcopy(fields))
        elif op == "$inc":
            for key, amount in fields.items():
                doc[key] = doc.get(key, 0) + amount
        elif op == "$unset":
            for key in fields:
                doc.pop(key, None)
        else:
            raise NotImplementedError(op)


class FakeCursor:
    def __init__(self, docs, projection):
        self._docs = docs
        self._projection = projection
        self._sort = []
        self._limit = 0

    def sort(self, key_or_list, direction=None):
        if isinstance(key_or_list, str):
            self._sort = [(key_or_list, direction or 1)]
        else:
            self._sort = list(key_or_list)
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        docs = list(self._docs)
        for key, direction in reversed(self._sort):
            present = [d for d in docs if _lookup(d, key) not in (_MISSING, None)]
            absent = [d for d in docs if _lookup(d, key) in (_MISSING, None)]
            present.sort(key=lambda d: _lookup(d, key), reverse=direction < 0)
            docs = present + absent if direction < 0 else absent + present
        limit = self._limit or length
        if limit:
            docs = docs[:limit]
        return [_project(d, self._projection) for d in docs]


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.indexes = []

    # -- test helpers (sync) --------------------------------------------------

    def add_index(self, keys, unique=False, sparse=False, **_):
        fields = (keys,) if isinstance(keys, str) else tuple(k for k, _ in keys)
        self.indexes.append((fields, unique, sparse))

    def seed(self, *docs):
        for doc in docs:
            self._insert(copy.deepcopy(doc))

    # -- internals ------------------------------------------------------------

    def _check_unique(self, candidate, ignore=None):
        for fields, unique, sparse in self.indexes:
            if not unique:
                continue
            values = [_lookup(candidate, f) for f in fields]
            if sparse and all(v is _MISSING for v in values):
                continue
            key = tuple(None if v is _MISSING else v for v in values)
            for other in self.docs:
                if other is ignore:
                    continue
                other_values = [_lookup(other, f) for f in fields]
                if sparse and all(v is _MISSING for v in other_values):
                    continue
                if tuple(None if v is _MISSING else v for v in other_values) == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {fields} dup key: {key}",
                        11000,
                    )

    def _insert(self, doc):
        doc.setdefault("_id", uuid.uuid4().hex)
        self._check_unique(doc)
        self.docs.append(doc)
        return doc["_id"]

    def _first(self, flt):
        for doc in self.docs:
            if matches(doc, flt):
                return doc
        return None

    def _update_doc(self, doc, update):
        updated = copy.deepcopy(doc)
        _apply_update(updated, update)
        self._check_unique(updated, ignore=doc)
        doc.clear()
        doc.update(updated)

    def _upsert(self, flt, update):
        doc = {
            k: copy.deepcopy(v) for k, v in flt.items()
            if not k.startswith("$") and not _is_operator_dict(v)
        }
        _apply_update(doc, update, inserting=True)
        self._insert(doc)
        return doc

    # -- driver surface -------------------------------------------------------

    async def create_index(self, keys, **options):
        self.add_index(keys, **options)

    async def insert_one(self, doc):
        await asyncio.sleep(0)
        stored = copy.deepcopy(doc)
        inserted_id = self._insert(stored)
        doc["_id"] = inserted_id
        return SimpleNamespace(inserted_id=inserted_id)

    async def find_one(self, flt=None, projection=None):
        await asyncio.sleep(0)
        doc = self._first(flt)
        return _project(doc, projection) if doc is not None else None

    def find(self, flt=None, projection=None):
        return FakeCursor([d for d in self.docs if matches(d, flt)], projection)

    async def count_documents(self, flt):
        await asyncio.sleep(0)
        return sum(1 for d in self.docs if matches(d, flt))

    async def update_one(self, flt, update, upsert=False):
        await asyncio.sleep(0)
        doc = self._first(flt)
        if doc is not None:
            before = copy.deepcopy(doc)
            self._update_doc(doc, update)
            return SimpleNamespace(matched_count=1, modified_count=int(before != doc), upserted_id=None)
        if upsert:
            created = self._upsert(flt, update)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=created["_id"])
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, flt, update):
        await asyncio.sleep(0)
        docs = [d for d in self.docs if matches(d, flt)]
        for doc in docs:
            self._update_doc(doc, update)
        return SimpleNamespace(matched_count=len(docs), modified_count=len(docs))

    async def find_one_and_update(
        self, flt, update, projection=None, upsert=False, return_document=ReturnDocument.BEFORE
    ):
        await asyncio.sleep(0)
        doc = self._first(flt)
        if doc is None:
            if not upsert:
                return None
            created = self._upsert(flt, update)
            return _project(created, projection) if return_document == ReturnDocument.AFTER else None
        before = _project(doc, projection)
        self._update_doc(doc, update)
        return _project(doc, projection) if return_document == ReturnDocument.AFTER else before

    async def delete_one(self, flt):
        await asyncio.sleep(0)
        doc = self._first(flt)
        if doc is None:
            return SimpleNamespace(deleted_count=0)
        self.docs.remove(doc)
        return SimpleNamespace(deleted_count=1)

    async def delete_many(self, flt):
        await asyncio.sleep(0)
        docs = [d for d in self.docs if matches(d, flt)]
        for doc in docs:
            self.docs.remove(doc)
        return SimpleNamespace(deleted_count=len(docs))


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    async def command(self, *args, **kwargs):
        return {"ok": 1}


# =============================================================================
# Fixtures and helpers
# =============================================================================

@pytest.fixture
def fake_db(monkeypatch):
    """In-memory database with the production index set installed."""
    fake = FakeDatabase()
    for collection, keys, options in INDEXES:
        fake[collection].add_index(keys, **options)
    monkeypatch.setattr(database, "db", fake)
    entitlement_checker.configure(EntitlementOverrides())
    yield fake
    entitlement_checker.configure(EntitlementOverrides())


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


def seed_account(db, account_id, email=None, created_at=None, **extra):
    db.accounts.seed({
        "account_id": account_id,
        "email": email or f"{account_id}@example.com",
        "created_at": created_at or datetime.now(timezone.utc),
        **extra,
    })


def auth_headers(account_id, email=None, name=None):
    token = create_access_token({
        "sub": account_id,
        "email": email or f"{account_id}@example.com",
        "name": name,
    })
    return {"Authorization": f"Bearer {token}"}


def stripe_signature(payload: bytes, secret: str, timestamp: int = None) -> str:
    """Stripe-Signature header value for ``payload`` signed with ``secret``."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"
