"""
Pytest configuration for the consultation service tests.

Every test gets a fresh SQLite file database and in-memory fakes for the
video provider, the payment provider, Redis and the clock, wired in through
FastAPI dependency overrides.
"""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

# Configure settings BEFORE importing any telehealth modules
_TEST_DIR = tempfile.mkdtemp(prefix="telehealth-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ.pop("REDIS_URL", None)

from fastapi.testclient import TestClient  # noqa: E402

from telehealth.core.errors import VideoProviderError  # noqa: E402
from telehealth.database import Base, get_engine, get_session_factory  # noqa: E402
from telehealth.dependencies import get_clock, get_payment_provider, get_video_provider  # noqa: E402
from telehealth.main import app  # noqa: E402
from telehealth.models import (  # noqa: E402
    AuditEvent,
    Consultation,
    ConsultationStatus,
    Specialty,
    User,
    UserRole,
)
from telehealth.services.slot_lock import SlotLock, get_slot_lock  # noqa: E402
from telehealth.services.stripe_service import PaymentResult  # noqa: E402
from telehealth.utils.security import create_access_token  # noqa: E402

NOW = datetime(2030, 1, 15, 9, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeVideoProvider:
    """Records rooms and tokens in memory; hooks allow injecting failures and races."""

    def __init__(self):
        self.rooms = {}
        self.created = []
        self.deleted = []
        self.tokens = []
        self.fail_create = False
        self.fail_delete = False
        self.before_create_room = None
        self.on_create_room = None

    def create_room(self, room_name):
        hook, self.before_create_room = self.before_create_room, None
        if hook is not None:
            hook(room_name)
        if self.fail_create:
            raise VideoProviderError("Failed to create video room (HTTP 503)")
        if room_name in self.rooms:
            raise VideoProviderError("Failed to create video room (HTTP 400)")
        room_url = f"https://telehealth.daily.co/{room_name}"
        self.rooms[room_name] = room_url
        self.created.append(room_name)

        hook, self.on_create_room = self.on_create_room, None
        if hook is not None:
            hook(room_name)
        return {"room_name": room_name, "room_url": room_url}

    def create_meeting_token(self, room_name, user_id, user_name, is_owner, expires_at):
        token = f"meeting-token-{len(self.tokens) + 1}"
        self.tokens.append({
            "token": token,
            "room_name": room_name,
            "user_id": user_id,
            "user_name": user_name,
            "is_owner": is_owner,
            "expires_at": expires_at,
        })
        return token

    def delete_room(self, room_name):
        if self.fail_delete:
            raise VideoProviderError("Failed to delete video room (HTTP 500)")
        self.rooms.pop(room_name, None)
        self.deleted.append(room_name)
        return True

    def room_exists(self, room_name):
        return room_name in self.rooms


class FakePaymentProvider:
    def __init__(self):
        self.calls = []
        self.fail = False
        self.on_create = None

    def create_checkout_session(self, **kwargs):
        self.calls.append(kwargs)
        hook, self.on_create = self.on_create, None
        if hook is not None:
            hook(kwargs)
        if self.fail:
            return PaymentResult(success=False, error="Your card was declined")
        n = len(self.calls)
        return PaymentResult(success=True, data={
            "session_id": f"cs_test_{n}",
            "url": f"https://checkout.stripe.com/c/pay/cs_test_{n}",
        })


class FakeRedis:
    """The subset of redis.Redis used by SlotLock."""

    def __init__(self):
        self.store = {}
        self.expiry = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.expiry[key] = ex
        return True

    def get(self, key):
        return self.store.get(key)

    def delete(self, key):
        existed = key in self.store
        self.store.pop(key, None)
        self.expiry.pop(key, None)
        return int(existed)


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.id})}"}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def video_provider():
    return FakeVideoProvider()


@pytest.fixture
def payment_provider():
    return FakePaymentProvider()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def slot_lock(fake_redis):
    return SlotLock(fake_redis, ttl_seconds=900)


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database for each test"""
    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session, clock, video_provider, payment_provider, slot_lock):
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_video_provider] = lambda: video_provider
    app.dependency_overrides[get_payment_provider] = lambda: payment_provider
    app.dependency_overrides[get_slot_lock] = lambda: slot_lock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _make_user(db, user_id, role, name):
    user = User(id=user_id, email=f"{user_id}@test.example", name=name, role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def patient(db_session):
    return _make_user(db_session, "patient-a", UserRole.PATIENT, "Pat A")


@pytest.fixture
def other_patient(db_session):
    return _make_user(db_session, "patient-b", UserRole.PATIENT, "Pat B")


@pytest.fixture
def doctor(db_session):
    return _make_user(db_session, "doctor-a", UserRole.DOCTOR, "Dr A")


@pytest.fixture
def other_doctor(db_session):
    return _make_user(db_session, "doctor-b", UserRole.DOCTOR, "Dr B")


@pytest.fixture
def admin(db_session):
    return _make_user(db_session, "admin-a", UserRole.ADMIN, "Admin A")


@pytest.fixture
def make_consultation(db_session, clock, patient):
    """Insert a consultation directly; returns its id."""
    def _make(
        status=ConsultationStatus.CREATED,
        doctor=None,
        scheduled_start_at=None,
        specialty=Specialty.GENERAL,
        owner=None
    ):
        consultation = Consultation(
            patient_id=(owner or patient).id,
            doctor_id=doctor.id if doctor else None,
            specialty=specialty,
            status=status,
            scheduled_start_at=scheduled_start_at,
            created_at=clock.now,
            updated_at=clock.now,
        )
        db_session.add(consultation)
        db_session.commit()
        return consultation.id
    return _make


def fetch_consultation(db, consultation_id) -> Consultation:
    db.expire_all()
    return db.query(Consultation).filter(Consultation.id == consultation_id).first()


def audit_events(db, consultation_id=None, event_type=None):
    db.expire_all()
    query = db.query(AuditEvent)
    if consultation_id:
        query = query.filter(AuditEvent.consultation_id == consultation_id)
    if event_type:
        query = query.filter(AuditEvent.event_type == event_type)
    return query.order_by(AuditEvent.created_at, AuditEvent.id).all()
