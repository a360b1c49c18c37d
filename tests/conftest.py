"""
Pytest configuration and fixtures
"""
import copy
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from google.api_core.exceptions import NotFound

# Add project root to path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Keep the real environment out of the app's start-up configuration
os.environ.setdefault("FLASK_SECRET_KEY", "test-secret")
os.environ.setdefault("FLASK_ENV", "testing")

import app as app_module
import push_notifications
from admin_auth import AdminCredentials
from contact_relay import MailSettings
from firebase_admin import firestore


# --- In-memory Firestore double ---

OPERATORS = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a is not None and a < b,
    "<=": lambda a, b: a is not None and a <= b,
    ">": lambda a, b: a is not None and a > b,
    ">=": lambda a, b: a is not None and a >= b,
    "in": lambda a, b: a in b,
    "array_contains": lambda a, b: isinstance(a, list) and b in a,
}


def _resolve(data: dict) -> dict:
    now = datetime.now(timezone.utc)
    resolved = {}
    for key, value in data.items():
        if value is firestore.SERVER_TIMESTAMP:
            resolved[key] = now
        elif value is firestore.DELETE_FIELD:
            resolved[key] = value
        else:
            resolved[key] = copy.deepcopy(value)
    return resolved


class FakeSnapshot:
    def __init__(self, reference, data):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeWatch:
    def __init__(self):
        self.unsubscribed = False

    def unsubscribe(self):
        self.unsubscribed = True


class FakeDocumentReference:
    def __init__(self, store, collection, doc_id):
        self._store = store
        self._collection = collection
        self.id = doc_id

    @property
    def _docs(self):
        return self._store.data.setdefault(self._collection, {})

    def get(self):
        return FakeSnapshot(self, copy.deepcopy(self._docs.get(self.id)))

    def set(self, data):
        self._docs[self.id] = _resolve(data)

    def update(self, data):
        if self.id not in self._docs:
            raise NotFound(f"No document to update: {self._collection}/{self.id}")
        doc = self._docs[self.id]
        for key, value in _resolve(data).items():
            if value is firestore.DELETE_FIELD:
                doc.pop(key, None)
            else:
                doc[key] = value

    def delete(self):
        self._docs.pop(self.id, None)


class FakeQuery:
    def __init__(self, store, collection, filters=(), orders=(), limit_to=None):
        self._store = store
        self._collection = collection
        self._filters = filters
        self._orders = orders
        self._limit = limit_to

    def _copy(self, **changes):
        state = {"filters": self._filters, "orders": self._orders, "limit_to": self._limit, **changes}
        return FakeQuery(self._store, self._collection, **state)

    def where(self, field_path=None, op_string=None, value=None, *, filter=None):
        if filter is not None:
            field_path, op_string, value = filter.field_path, filter.op_string, filter.value
        return self._copy(filters=self._filters + ((field_path, op_string, value),))

    def order_by(self, field_path, direction="ASCENDING"):
        return self._copy(orders=self._orders + ((field_path, direction),))

    def limit(self, count):
        return self._copy(limit_to=count)

    def stream(self):
        if self._collection in self._store.failing:
            raise RuntimeError(f"collection {self._collection} unavailable")
        docs = self._store.data.get(self._collection, {})
        rows = [
            (doc_id, data) for doc_id, data in docs.items()
            if all(OPERATORS[op](data.get(field), value) for field, op, value in self._filters)
        ]
        for field, direction in reversed(self._orders):
            # Firestore leaves out documents that lack the ordered field
            rows = [row for row in rows if field in row[1]]
            rows.sort(key=lambda row: row[1][field], reverse=(direction == "DESCENDING"))
        if self._limit is not None:
            rows = rows[:self._limit]
        return iter([
            FakeSnapshot(FakeDocumentReference(self._store, self._collection, doc_id), copy.deepcopy(data))
            for doc_id, data in rows
        ])

    def get(self):
        return list(self.stream())

    def count(self):
        total = len(list(self.stream()))
        return SimpleNamespace(get=lambda: [[SimpleNamespace(value=total)]])

    def on_snapshot(self, callback):
        watch = FakeWatch()
        self._store.watches.append(watch)
        callback(list(self.stream()), [], datetime.now(timezone.utc))
        return watch


class FakeCollectionReference(FakeQuery):
    def __init__(self, store, collection):
        super().__init__(store, collection)

    def document(self, document_id=None):
        return FakeDocumentReference(self._store, self._collection, document_id or uuid.uuid4().hex[:20])

    def add(self, document_data):
        ref = self.document()
        ref.set(document_data)
        return datetime.now(timezone.utc), ref


class FakeFirestore:
    def __init__(self):
        self.data = {}
        self.failing = set()
        self.watches = []

    def collection(self, name):
        return FakeCollectionReference(self, name)

    def seed(self, collection, doc_id, **fields):
        self.data.setdefault(collection, {})[doc_id] = fields
        return doc_id

    def docs(self, collection):
        return self.data.get(collection, {})


class FakeBlob:
    def __init__(self, bucket, path):
        self.bucket = bucket
        self.name = path
        self.metadata = None
        self.content_type = None
        self.payload = None

    def upload_from_file(self, file_obj, content_type=None):
        self.payload = file_obj.read()
        self.content_type = content_type
        self.bucket.uploaded[self.name] = self


class FakeBucket:
    name = "test-bucket.appspot.com"

    def __init__(self):
        self.uploaded = {}

    def blob(self, path):
        return FakeBlob(self, path)


# --- Fixtures ---

ADMIN_EMAILS = ("a@x.com", "b@x.com")
ADMIN_PASSWORDS = ("p1", "p2")


@pytest.fixture
def fake_db(monkeypatch):
    """Replaces the Firestore client with an in-memory store."""
    db = FakeFirestore()
    monkeypatch.setattr(app_module, "get_db", lambda: db)
    return db


@pytest.fixture
def fake_bucket(monkeypatch):
    bucket = FakeBucket()
    monkeypatch.setattr(app_module, "get_bucket", lambda: bucket)
    return bucket


@pytest.fixture
def mail_settings():
    return MailSettings(
        smtp_host="smtp.test.local",
        smtp_port=587,
        username="relay@hilbu.test",
        password="relay-pass",
        to_address="support@hilbu.test",
        brand="HILBU",
    )


@pytest.fixture(autouse=True)
def push_calls(monkeypatch):
    """Records every request to the push service instead of sending it."""
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json})
        return SimpleNamespace(status_code=200, raise_for_status=lambda: None, json=lambda: {"data": []})

    monkeypatch.setattr(push_notifications.requests, "post", fake_post)
    return calls


@pytest.fixture
def client(fake_db, mail_settings, monkeypatch):
    flask_app = app_module.app
    monkeypatch.setitem(flask_app.config, "TESTING", True)
    monkeypatch.setitem(
        flask_app.config, "ADMIN_CREDENTIALS",
        AdminCredentials(emails=ADMIN_EMAILS, passwords=ADMIN_PASSWORDS),
    )
    monkeypatch.setitem(flask_app.config, "MAIL_SETTINGS", mail_settings)
    monkeypatch.setattr(app_module, "JWT_SECRET", "test-jwt-secret")
    with flask_app.app_context():
        app_module.cache.clear()
    with flask_app.test_client() as test_client:
        yield test_client


@pytest.fixture
def admin_headers(client):
    token, _ = app_module.issue_admin_token("a@x.com")
    return {"Authorization": f"Bearer {token}"}
