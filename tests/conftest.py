import re

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
from main import app
from utils.otp_service import OtpStore
from utils.whatsapp import PairingState


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeMessenger:
    def __init__(self):
        self.sent = []
        self.fail_with = None
        self.pairing = PairingState(connected=True)

    def send_message(self, phone, text):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((phone, text))

    def get_pairing_state(self):
        if isinstance(self.pairing, Exception):
            raise self.pairing
        return self.pairing

    def last_code(self):
        _, text = self.sent[-1]
        return re.search(r"\*(\d{6})\*", text).group(1)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def messenger():
    return FakeMessenger()


@pytest.fixture()
def store(messenger, clock):
    return OtpStore(messenger, clock=clock)


@pytest.fixture()
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    db = Session()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture()
def client(store, messenger, db_session):
    def _get_db():
        yield db_session

    app.state.otp_store = store
    app.state.messenger = messenger
    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
