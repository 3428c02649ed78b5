import base64
import copy
from datetime import datetime, timedelta, timezone
from threading import Lock

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from jose import jwt

from src.config import settings
from src.db import get_store
from src.main import app
from src.observability import reset_metrics


class FakeAtomicUnit:
    def __init__(self, store: "FakeDocumentStore"):
        self.store = store
        self.writes = []

    def existing(self, paths):
        assert not self.writes, "reads must come before writes"
        return {path for path in paths if path in self.store.documents}

    def set(self, path, data):
        self.writes.append(("set", path, copy.deepcopy(data)))

    def increment(self, path, counters):
        self.writes.append(("increment", path, dict(counters)))


class FakeDocumentStore:
    def __init__(self, documents=None, *, max_operations_per_commit: int = 500, fail_on_commit=()):
        self.documents = copy.deepcopy(documents or {})
        self.max_operations_per_commit = max_operations_per_commit
        self.fail_on_commit = set(fail_on_commit)
        self.commit_attempts = 0
        self.committed_units = []
        self._lock = Lock()
        self._auto_id = 0

    def run_atomic(self, work):
        with self._lock:
            unit = FakeAtomicUnit(self)
            result = work(unit)
            attempt = self.commit_attempts
            self.commit_attempts += 1
            if attempt in self.fail_on_commit:
                raise RuntimeError("deadline exceeded while committing")
            if len(unit.writes) > self.max_operations_per_commit:
                raise ValueError("too many operations in a single commit")
            staged = {path for kind, path, _ in unit.writes if kind == "set"}
            for kind, path, _ in unit.writes:
                if kind == "increment" and path not in self.documents and path not in staged:
                    raise KeyError(f"no document to update: {path}")
            for kind, path, data in unit.writes:
                if kind == "set":
                    self.documents[path] = data
                else:
                    doc = self.documents[path]
                    for field, amount in data.items():
                        doc[field] = doc.get(field, 0) + amount
            self.committed_units.append(len(unit.writes))
            return result

    def get(self, path):
        doc = self.documents.get(path)
        if doc is None:
            return None
        return {"id": path.rsplit("/", 1)[-1], **copy.deepcopy(doc)}

    def collection(self, collection_path):
        prefix = f"{collection_path}/"
        return {
            path[len(prefix):]: doc
            for path, doc in self.documents.items()
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        }

    def query(self, collection_path, *, filters=(), order_by=None, descending=False, limit=None):
        rows = [{"id": doc_id, **copy.deepcopy(doc)} for doc_id, doc in self.collection(collection_path).items()]
        for field, op, value in filters:
            assert op == "==", f"unsupported operator {op}"
            rows = [row for row in rows if row.get(field) == value]
        if order_by:
            rows = [row for row in rows if order_by in row]
            rows.sort(key=lambda row: row[order_by], reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def add(self, collection_path, data):
        self._auto_id += 1
        doc_id = f"auto-{self._auto_id}"
        self.documents[f"{collection_path}/{doc_id}"] = copy.deepcopy(data)
        return doc_id


class SigningKey:
    def __init__(self):
        self._private_key = ec.generate_private_key(ec.SECP256R1())
        der = self._private_key.public_key().public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)
        self.public_key = base64.b64encode(der).decode("ascii")
        self.public_key_pem = self._private_key.public_key().public_bytes(
            Encoding.PEM, PublicFormat.SubjectPublicKeyInfo
        ).decode("ascii")

    def sign(self, timestamp: str, body: bytes) -> str:
        signature = self._private_key.sign(timestamp.encode("utf-8") + body, ec.ECDSA(hashes.SHA256()))
        return base64.b64encode(signature).decode("ascii")


@pytest.fixture
def fake_store():
    store = FakeDocumentStore()
    app.dependency_overrides[get_store] = lambda: store
    yield store
    app.dependency_overrides.clear()


@pytest.fixture
def signing_key():
    return SigningKey()


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def other_signing_key():
    return SigningKey()


def issue_token(subject: str, token_type: str, **claims) -> str:
    """Sign a token the way the dashboard's identity service does."""
    now = datetime.now(timezone.utc)
    payload = {"sub": subject, "type": token_type, "exp": now + timedelta(minutes=60), "iat": now, **claims}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
