# sdeit/tests/conftest.py
import datetime as dt
import uuid

import pytest

from sdeit.config import Settings
from sdeit.crypto import AuthoritySigner
from sdeit.kv import delta_digest
from sdeit.schemas import DeltaMessage

UTC = dt.timezone.utc

ALICE = uuid.UUID(int=1)
BOB = uuid.UUID(int=2)
CAROL = uuid.UUID(int=3)
ME = uuid.UUID("00000000-0000-4000-8000-0000000000ff")


def ts(day, hour=12):
    return dt.datetime(2020, 4, day, hour, tzinfo=UTC)


class ManualClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def sign_delta(signer, risk_updates, *, timestamp, allowance=1.0):
    digest = delta_digest(
        timestamp=timestamp,
        daily_tlot_increase_allowance=allowance,
        risk_updates=risk_updates,
    )
    return DeltaMessage(
        signature=signer.sign_digest(digest),
        risk_updates=risk_updates,
        daily_tlot_increase_allowance=allowance,
        timestamp=timestamp,
    )


@pytest.fixture
def clock():
    return ManualClock(ts(1))


@pytest.fixture
def signer():
    return AuthoritySigner.generate()


@pytest.fixture
def rogue_signer():
    return AuthoritySigner.generate()


@pytest.fixture
def make_delta(signer):
    def _make(risk_updates, *, timestamp, allowance=1.0):
        return sign_delta(signer, risk_updates, timestamp=timestamp, allowance=allowance)

    return _make


@pytest.fixture
def settings(signer):
    return Settings(
        authority_public_key_hex=signer.public_key_bytes().hex(),
        own_peer_id=str(ME),
        infection_risk_test_threshold=0.3,
        metrics_enable=False,
    )


@pytest.fixture
def clean_env(monkeypatch):
    import os

    for name in list(os.environ):
        if name.startswith("SDEIT_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch
