"""Pytest fixtures for Silverbullet tests."""

import json
import os
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

# Set test environment variables before importing app
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["LOG_LEVEL"] = "DEBUG"

from silverbullet.api.deps import get_app_settings
from silverbullet.config import Settings
from silverbullet.core.certificate_authority import CAMaterial, bootstrap_ca_material
from silverbullet.core.identity_store import IdentityStore
from silverbullet.core.profile import ProfileContext
from silverbullet.core.silverbullet import SilverbulletManager
from silverbullet.db.database import create_database_engine, get_db
from silverbullet.db.models import Base
from silverbullet.main import app

ADMIN_TOKEN = "test-admin-token"
CONSORTIUM = "eduroam"

PROFILE_DOCUMENT = [
    {"profile_id": 1, "institution_id": 42, "federation": "de", "max_active_users": 3},
    {"profile_id": 2, "institution_id": 43, "federation": "nl", "max_active_users": 3},
]


@pytest.fixture(scope="session")
def ca_material(tmp_path_factory) -> tuple[Path, CAMaterial]:
    """Root and issuing CA generated once per test session."""
    ca_dir = tmp_path_factory.mktemp("SilverbulletClientCerts")
    material = bootstrap_ca_material(ca_dir, CONSORTIUM, key_size=2048)
    return ca_dir, material


@pytest.fixture(scope="session")
def ca_dir(ca_material) -> Path:
    return ca_material[0]


@pytest.fixture(scope="function")
def engine() -> Generator[Engine, None, None]:
    """Fresh in-memory database for each test."""
    engine = create_database_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine: Engine) -> Generator[Session, None, None]:
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_settings(ca_dir: Path) -> Callable[..., Settings]:
    """Factory for settings pointing at the test CA."""
    def _make(**overrides) -> Settings:
        values = {
            "database_url": "sqlite:///:memory:",
            "consortium_name": CONSORTIUM,
            "ca_cert_dir": str(ca_dir),
            "profiles": json.dumps(PROFILE_DOCUMENT),
            "admin_api_token": ADMIN_TOKEN,
            "max_issuance_attempts": 3,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def profile(settings: Settings) -> ProfileContext:
    return settings.get_profiles()[1]


@pytest.fixture
def other_profile(settings: Settings) -> ProfileContext:
    return settings.get_profiles()[2]


@pytest.fixture
def store(db_session: Session, settings: Settings) -> IdentityStore:
    return IdentityStore(db_session, settings.get_profiles())


@pytest.fixture
def manager(db_session: Session, profile: ProfileContext, settings: Settings) -> SilverbulletManager:
    return SilverbulletManager(db_session, profile, settings)


@pytest.fixture(scope="function")
def client(db_session: Session, settings: Settings) -> Generator[TestClient, None, None]:
    """Create a test client with database and settings overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_app_settings] = lambda: settings

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
