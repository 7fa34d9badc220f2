import os
import tempfile
import time
from decimal import Decimal

_tmp = tempfile.mkdtemp(prefix="store-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_tmp}/store.db")
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["EVENT_BACKEND"] = "none"
os.environ["PAYMENT_LOOKUP_DELAY"] = "0"
os.environ["PROCESSOR_RETRY_DELAY"] = "0"
os.environ["MAX_DOWNLOADS"] = "3"

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from app import deps
from app.db import Base, SessionLocal, engine
from app.idempotency import MemoryIdempotencyStore
from app.main import app
from app.models import Album, Photo, Photographer
from app.processor import ProcessorNotFound, ProcessorUnavailable
from app.webhook import compute_signature

WEBHOOK_SECRET = "test-webhook-secret"


class FakeProcessor:
    def __init__(self):
        self.payments = {}
        self.merchant_orders = {}
        self.preferences = []
        self.preapprovals = {}
        self.preapproval_updates = []
        self.unavailable = False
        self.calls = []

    async def get_payment(self, payment_id):
        self.calls.append(("payment", payment_id))
        if self.unavailable:
            raise ProcessorUnavailable("down")
        if payment_id not in self.payments:
            raise ProcessorNotFound(f"payment {payment_id} not found", status_code=404)
        return self.payments[payment_id]

    async def get_merchant_order(self, merchant_order_id):
        self.calls.append(("merchant_order", merchant_order_id))
        if self.unavailable:
            raise ProcessorUnavailable("down")
        if merchant_order_id not in self.merchant_orders:
            raise ProcessorNotFound(f"merchant_order {merchant_order_id} not found", status_code=404)
        return self.merchant_orders[merchant_order_id]

    async def create_preference(self, body):
        if self.unavailable:
            raise ProcessorUnavailable("down")
        self.preferences.append(body)
        n = len(self.preferences)
        return {
            "id": f"pref-{n}",
            "init_point": f"https://pay.example/checkout/{n}",
            "sandbox_init_point": f"https://sandbox.pay.example/checkout/{n}",
        }

    async def create_preapproval(self, body):
        if self.unavailable:
            raise ProcessorUnavailable("down")
        preapproval_id = f"pre-{len(self.preapprovals) + 1}"
        self.preapprovals[preapproval_id] = dict(body, id=preapproval_id)
        return {"id": preapproval_id, "init_point": f"https://pay.example/subscribe/{preapproval_id}"}

    async def get_preapproval(self, preapproval_id):
        self.calls.append(("preapproval", preapproval_id))
        if self.unavailable:
            raise ProcessorUnavailable("down")
        if preapproval_id not in self.preapprovals:
            raise ProcessorNotFound(f"preapproval {preapproval_id} not found", status_code=404)
        return self.preapprovals[preapproval_id]

    async def update_preapproval(self, preapproval_id, body):
        if self.unavailable:
            raise ProcessorUnavailable("down")
        self.preapproval_updates.append((preapproval_id, body))
        self.preapprovals.setdefault(preapproval_id, {"id": preapproval_id}).update(body)
        return self.preapprovals[preapproval_id]


class FakeStorage:
    def __init__(self):
        self.objects = {}
        self.signed = []
        self.fail_signing = False

    def upload_original(self, key, data, content_type):
        self.objects[("originals", key)] = data

    def upload_watermarked(self, key, data, content_type="image/jpeg"):
        self.objects[("watermarked", key)] = data

    def signed_url(self, key, expires_in):
        from app.storage import StorageError

        if self.fail_signing:
            raise StorageError("signing failed")
        self.signed.append((key, expires_in))
        return f"https://storage.example/originals/{key}?expires={expires_in}"

    def public_url(self, key):
        if not key:
            return None
        return f"https://cdn.example/{key}"


class FakeWatermark:
    async def apply(self, data, content_type):
        return b"marked:" + data


@pytest.fixture(autouse=True)
def _tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def idempotency_store():
    return MemoryIdempotencyStore()


@pytest.fixture
def client(processor, storage, idempotency_store):
    app.dependency_overrides[deps.get_processor] = lambda: processor
    app.dependency_overrides[deps.get_storage] = lambda: storage
    app.dependency_overrides[deps.get_watermark] = lambda: FakeWatermark()
    app.dependency_overrides[deps.get_idempotency_store] = lambda: idempotency_store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def catalog(db):
    """One photographer, one album, photos photo-1 (15.00) and photo-2 (20.00)."""
    photographer = Photographer(
        id="ph-1", auth_user_id="auth-user-1", business_name="Sunny Side Photos", email="studio@sunny.org",
    )
    other = Photographer(id="ph-2", auth_user_id="auth-user-2", business_name="Other Studio")
    album = Album(id="album-1", photographer_id="ph-1", name="Spring 2026", price_per_photo=Decimal("15.00"))
    other_album = Album(id="album-2", photographer_id="ph-2", name="Other", price_per_photo=Decimal("10.00"))
    db.add_all([photographer, other, album, other_album])
    db.add_all([
        Photo(
            id="photo-1", album_id="album-1", price=Decimal("15.00"),
            original_file_path="albums/album-1/original/1.jpg",
            watermarked_file_path="albums/album-1/watermarked/1.jpg",
            student_code="A-12",
        ),
        Photo(
            id="photo-2", album_id="album-1", price=Decimal("20.00"),
            original_file_path="albums/album-1/original/2.jpg",
            watermarked_file_path="albums/album-1/watermarked/2.jpg",
        ),
        Photo(
            id="photo-x", album_id="album-2", price=Decimal("10.00"),
            original_file_path="albums/album-2/original/x.jpg",
            watermarked_file_path="albums/album-2/watermarked/x.jpg",
        ),
    ])
    db.commit()
    return {"photographer_id": "ph-1", "album_id": "album-1"}


def auth_headers(sub="auth-user-1"):
    token = jwt.encode({"sub": sub, "email": "studio@sunny.org"}, "test-jwt-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def signed_headers(resource_id, request_id="req-1", ts=None, secret=WEBHOOK_SECRET):
    ts = str(int(time.time())) if ts is None else str(ts)
    digest = compute_signature(secret, resource_id, request_id, ts)
    headers = {"x-signature": f"ts={ts},v1={digest}"}
    if request_id is not None:
        headers["x-request-id"] = request_id
    return headers


def checkout(client, cart, email="a@b.com"):
    return client.post("/create-payment-preference", json={"cart": cart, "customerEmail": email})


def merchant_order(order_id, total="15.00", paid="15.00", mo_id="mo-1", payment_id=9001):
    return {
        "id": mo_id,
        "external_reference": order_id,
        "order_status": "paid" if Decimal(paid) >= Decimal(total) else "payment_required",
        "total_amount": float(total),
        "paid_amount": float(paid),
        "payments": [{"id": payment_id, "status": "approved", "transaction_amount": float(paid)}],
    }
