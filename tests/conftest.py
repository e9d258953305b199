from collections.abc import Generator
from datetime import date

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from workshop.auth.security import create_access_token, get_password_hash
from workshop.db import Base, get_db
from workshop.main import app
from workshop.models.models import JobOrder, MaintenanceSettings, User
from workshop.services.api_key_gate import ApiKeyGate, ApiKeyValidator

test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = sessionmaker(bind=test_engine, autoflush=False, autocommit=False)

PASSWORD = "secret123"
PASSWORD_HASH = get_password_hash(PASSWORD)
WORK_DAY = date(2024, 3, 4)
VALIDATOR_URL = "https://validator.invalid/api/validate"


def _valid_key_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"valid": True})


def make_user(db: Session, name: str, role: str, level=None, break_times=None) -> User:
    username = name.lower().replace(" ", ".")
    user = User(
        name=name,
        username=username,
        email=f"{username}@autoshop.com",
        password_hash=PASSWORD_HASH,
        role=role,
        level=level,
        break_times=break_times or [],
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_job(db: Session, job_number: str, technician=None, start="08:00", end="09:00", day=WORK_DAY, **fields) -> JobOrder:
    job = JobOrder(
        job_number=job_number.upper(),
        plate_number="ABC1234",
        vin="VIN0001",
        assigned_technician_id=technician.id if technician else None,
        time_start=start,
        time_end=end,
        date=day,
        original_created_date=fields.pop("original_created_date", day),
        job_list=fields.pop("job_list", [{"description": "Oil change", "status": "Finished"}]),
        parts=fields.pop("parts", [{"name": "Oil filter", "availability": "Available"}]),
        status=fields.pop("status", "OG"),
        carry_over_chain=fields.pop("carry_over_chain", []),
        **fields,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def token_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture()
def db() -> Generator[Session, None, None]:
    """Fresh schema per test on a shared in-memory database."""
    Base.metadata.drop_all(bind=test_engine)
    Base.metadata.create_all(bind=test_engine)
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def maintenance(db: Session) -> MaintenanceSettings:
    row = MaintenanceSettings(id=1, is_under_maintenance=False, api_key="test-key")
    db.add(row)
    db.commit()
    return row


@pytest.fixture()
def gate() -> ApiKeyGate:
    return ApiKeyGate(
        TestSession,
        validator=ApiKeyValidator(url=VALIDATOR_URL, transport=httpx.MockTransport(_valid_key_handler)),
    )


@pytest.fixture()
def client(db: Session, gate: ApiKeyGate) -> Generator[TestClient, None, None]:
    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.state.api_key_gate = gate
    app.state.limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def admin(db: Session) -> User:
    return make_user(db, "Ana Admin", "administrator")


@pytest.fixture()
def controller(db: Session) -> User:
    return make_user(db, "Carl Controller", "job-controller")


@pytest.fixture()
def advisor(db: Session) -> User:
    return make_user(db, "Sam Advisor", "service-advisor")


@pytest.fixture()
def technician(db: Session) -> User:
    return make_user(
        db,
        "Tess Tech",
        "technician",
        level="level-2",
        break_times=[{"description": "Lunch", "start_time": "12:00", "end_time": "13:00"}],
    )


@pytest.fixture()
def other_technician(db: Session) -> User:
    return make_user(db, "Ollie Tech", "technician", level="level-1")


@pytest.fixture()
def admin_headers(admin: User) -> dict[str, str]:
    return token_headers(admin)


@pytest.fixture()
def controller_headers(controller: User) -> dict[str, str]:
    return token_headers(controller)


@pytest.fixture()
def technician_headers(technician: User) -> dict[str, str]:
    return token_headers(technician)
