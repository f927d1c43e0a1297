import asyncio
import sys
from datetime import date, time

# ---- FIX WINDOWS + PSYCOPG ASYNC ----
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from medcenter.api.main import create_app
from medcenter.config import Settings
from medcenter.db import session_scope
from medcenter.models import Appointment, Base, Patient, User, UserRole
from medcenter.security import create_access_token, hash_password
from medcenter.services.delivery import DeliveryReceipt
from medcenter.services.storage import LocalArtifactStore

TEST_PASSWORD = "secret123"


class FakeDelivery:
    """Records every send; ``fail_for`` owners get an undelivered receipt."""

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    async def send(self, report, day, recipients, attachment=None, filename=None):
        self.sent.append((report.owner_id, report.date, list(recipients), attachment))
        if report.owner_id in self.fail_for:
            return DeliveryReceipt(False, list(recipients), "mailbox unavailable")
        return DeliveryReceipt(True, list(recipients), "sent")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        JWT_SECRET="test-secret",
        REPORTS_DIR=str(tmp_path / "reports"),
        RATE_LIMIT_PER_MINUTE=1000,
        SMTP_USER="",
        S3_BUCKET="",
    )


@pytest.fixture
async def engine(settings):
    eng = create_async_engine(settings.DATABASE_URL)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def store(settings):
    return LocalArtifactStore(settings.REPORTS_DIR)


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
async def app(settings, session_factory, store, delivery):
    application = create_app(settings, session_factory, store=store, delivery=delivery)
    yield application
    await application.state.audit.drain()


async def make_user(session_factory, email="owner@example.com", role=UserRole.COORDINATOR, active=True):
    async with session_scope(session_factory) as session:
        user = User(
            name=email.split("@")[0],
            email=email,
            password_hash=hash_password(TEST_PASSWORD),
            role=role.value,
            is_active=active,
        )
        session.add(user)
    return user


async def make_patient(session_factory, name="Ana", surname="Gómez", code="P0001", active=True):
    async with session_scope(session_factory) as session:
        patient = Patient(code=code, name=name, surname=surname, is_active=active)
        session.add(patient)
    return patient


async def make_appointment(
    session_factory, owner, patient, day=date(2024, 6, 10),
    start=time(9, 0), end=time(9, 30), status="scheduled", category="consultation",
):
    async with session_scope(session_factory) as session:
        appt = Appointment(
            owner_id=owner.id, patient_id=patient.id, category=category, title="Session",
            date=day, start_time=start, end_time=end, status=status,
        )
        session.add(appt)
    return appt


@pytest.fixture
async def user(session_factory):
    return await make_user(session_factory)


@pytest.fixture
async def admin(session_factory):
    return await make_user(session_factory, email="admin@example.com", role=UserRole.ADMIN)


@pytest.fixture
async def patient(session_factory):
    return await make_patient(session_factory)


def auth_headers(user, settings):
    return {"Authorization": f"Bearer {create_access_token(user.id, settings)}"}


@pytest.fixture
async def client(app, user, settings):
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://testserver",
        headers=auth_headers(user, settings),
    ) as c:
        yield c


@pytest.fixture
async def anon_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
