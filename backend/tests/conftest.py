"""
Pytest configuration and shared test helpers for backend tests.
"""
import copy
import itertools
import os
import sys
from pathlib import Path
from types import SimpleNamespace

# Skip heavy server startup (MongoDB) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest
from unittest.mock import patch
from pymongo.errors import DuplicateKeyError, PyMongoError

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


# Unique keys mirror database._create_indexes
UNIQUE_KEYS = {
    "subscription_plans": ("plan_id",),
    "user_permissions": ("user_id",),
    "subscriptions": ("subscription_id", "user_id", "payment_intent_ids"),
    "payment_attempts": ("attempt_id", "intent_id"),
    "webhook_events": ("event_id",),
    "reconciliation_flags": ("flag_id",),
}


def _values(value):
    if value is None:
        return set()
    if isinstance(value, list):
        return {v for v in value if v is not None}
    return {value}


def _matches(doc, query):
    for key, expected in query.items():
        actual = doc.get(key)
        if isinstance(expected, dict) and any(k.startswith("$") for k in expected):
            for op, operand in expected.items():
                if op == "$ne":
                    if operand in _values(actual) or actual == operand:
                        return False
                elif op == "$in":
                    if not _values(actual) & set(operand):
                        return False
                elif op == "$exists":
                    if (key in doc) != bool(operand):
                        return False
                else:
                    raise NotImplementedError(op)
        elif isinstance(actual, list) and not isinstance(expected, list):
            if expected not in actual:
                return False
        elif actual != expected:
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        doc = {k: doc[k] for k in included if k in doc}
    if not projection.get("_id", 1):
        doc.pop("_id", None)
    return doc


class _Cursor:
    def __init__(self, docs):
        self._docs = docs
    
    def sort(self, key, direction=1):
        self._docs = sorted(
            self._docs,
            key=lambda d: (d.get(key) is None, str(d.get(key))),
            reverse=direction == -1,
        )
        return self
    
    def limit(self, n):
        self._docs = self._docs[:n]
        return self
    
    async def to_list(self, length=None):
        return self._docs[:length] if length else list(self._docs)


class InMemoryCollection:
    """Just enough of a motor collection for the billing services.

    Set ``fail_writes`` to make the next N writes raise PyMongoError.
    """
    _ids = itertools.count(1)
    
    def __init__(self, name):
        self.name = name
        self.docs = []
        self.unique = UNIQUE_KEYS.get(name, ())
        self.fail_writes = 0
    
    def _maybe_fail(self):
        if self.fail_writes:
            self.fail_writes -= 1
            raise PyMongoError(f"simulated write failure on {self.name}")
    
    def _check_unique(self, candidate, ignore=None):
        for key in self.unique:
            new = _values(candidate.get(key))
            for other in self.docs:
                if other is ignore:
                    continue
                if new & _values(other.get(key)):
                    raise DuplicateKeyError(f"E11000 duplicate key {self.name}.{key}", 11000)
    
    async def find_one(self, query, projection=None, **kw):
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None
    
    def find(self, query=None, projection=None, **kw):
        return _Cursor([_project(d, projection) for d in self.docs if _matches(d, query or {})])
    
    async def count_documents(self, query, **kw):
        return len([d for d in self.docs if _matches(d, query)])
    
    async def insert_one(self, doc, **kw):
        self._maybe_fail()
        self._check_unique(doc)
        doc.setdefault("_id", next(self._ids))
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])
    
    async def insert_many(self, docs, **kw):
        for doc in docs:
            await self.insert_one(doc)
        return SimpleNamespace(inserted_ids=[d["_id"] for d in docs])
    
    def _apply(self, doc, update):
        updated = copy.deepcopy(doc)
        for key, value in update.get("$set", {}).items():
            updated[key] = copy.deepcopy(value)
        for key, value in update.get("$addToSet", {}).items():
            current = updated.setdefault(key, [])
            if value not in current:
                current.append(value)
        self._check_unique(updated, ignore=doc)
        return updated
    
    async def update_one(self, query, update, upsert=False, **kw):
        self._maybe_fail()
        for i, doc in enumerate(self.docs):
            if _matches(doc, query):
                updated = self._apply(doc, update)
                self.docs[i] = updated
                return SimpleNamespace(matched_count=1, modified_count=int(updated != doc))
        return SimpleNamespace(matched_count=0, modified_count=0)
    
    async def update_many(self, query, update, **kw):
        self._maybe_fail()
        modified = 0
        for i, doc in enumerate(self.docs):
            if _matches(doc, query):
                updated = self._apply(doc, update)
                modified += int(updated != doc)
                self.docs[i] = updated
        return SimpleNamespace(matched_count=modified, modified_count=modified)


class InMemoryDB:
    def __init__(self):
        self._collections = {}
    
    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(name)
        return self._collections[name]
    
    def seed_plans(self):
        from services.plan_catalog import DEFAULT_PLANS
        for plan in DEFAULT_PLANS:
            self.subscription_plans.docs.append(copy.deepcopy(plan))
        return self


@pytest.fixture
def memory_db():
    """Seeded in-memory database patched in for every service."""
    db = InMemoryDB().seed_plans()
    with patch("database.database.get_db", return_value=db):
        yield db


@pytest.fixture
def no_retry_delay():
    with patch("services.subscription_store.PERSIST_RETRY_DELAY_SECONDS", 0):
        yield


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def auth_headers():
    from auth import create_access_token
    
    def _headers(user_id="user-1", role="ROLE_USER"):
        token = create_access_token({"user_id": user_id, "role": role})
        return {"Authorization": f"Bearer {token}"}
    return _headers
