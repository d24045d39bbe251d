import os
import shutil
import tempfile

# Settings are read at import time; point storage at a scratch dir first.
TEST_BASE_DIR = tempfile.mkdtemp(prefix="vehicle-intake-tests-")
os.environ["INTAKE_DATABASE_URL"] = "sqlite:///" + os.path.join(TEST_BASE_DIR, "intake.db")
os.environ["INTAKE_STATE_DIR"] = os.path.join(TEST_BASE_DIR, "sessions")
os.environ["INTAKE_EXTRACTOR_BACKEND"] = "tesseract"
os.environ["INTAKE_POLICY_BACKEND"] = "rules"

import pytest
from fastapi.testclient import TestClient

from vehicle_intake import models  # noqa: F401
from vehicle_intake.db import Base, SessionLocal, engine
from vehicle_intake.main import app, get_extractor, get_policy
from vehicle_intake.schemas import LiveHandle, OverrideDecision, VEHICLE_FIELD_KEYS, VehicleFields
from vehicle_intake.sequencer import StepSequencer
from vehicle_intake.session import sessions
from vehicle_intake.state_store import RecordStateStore


class FakeExtractor:
    """Returns canned fields per document kind; optionally raises or runs a hook."""

    name = "fake"

    def __init__(self):
        self.results = {}
        self.error = None
        self.hook = None
        self.calls = []

    def extract(self, document, kind):
        self.calls.append((document.name, kind))
        if self.hook is not None:
            self.hook()
        if self.error is not None:
            raise self.error
        return self.results.get(kind, VehicleFields())


class FakePolicy:
    """Approves every field unless told otherwise."""

    name = "fake"

    def __init__(self):
        self.overrides = {}
        self.error = None
        self.calls = []

    def decide(self, candidates, currents):
        self.calls.append((candidates, currents))
        if self.error is not None:
            raise self.error
        values = {key: True for key in VEHICLE_FIELD_KEYS}
        values.update(self.overrides)
        return OverrideDecision(**values)


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    shutil.rmtree(TEST_BASE_DIR, ignore_errors=True)


@pytest.fixture(scope="function")
def db_session():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def store(tmp_path):
    return RecordStateStore(str(tmp_path / "state" / "arsiv-asistani-storage.json"))


@pytest.fixture(scope="function")
def sequencer(store):
    return StepSequencer(store)


@pytest.fixture(scope="function")
def fake_extractor():
    return FakeExtractor()


@pytest.fixture(scope="function")
def fake_policy():
    return FakePolicy()


@pytest.fixture(scope="function")
def document():
    return LiveHandle(name="ruhsat.jpg", type="image/jpeg", data=b"fake-image-bytes")


@pytest.fixture(scope="function")
def client(tmp_path, db_session, fake_extractor, fake_policy):
    sessions.clear()
    sessions.state_dir = str(tmp_path / "sessions")
    app.dependency_overrides[get_extractor] = lambda: fake_extractor
    app.dependency_overrides[get_policy] = lambda: fake_policy

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    sessions.clear()
    sessions.state_dir = None
