# sdeit/tests/test_ledger.py
import datetime as dt
import math

import pytest

from sdeit.ledger import ExposureLedger
from sdeit.retention import RetentionManager
from sdeit.schemas import InputContractViolation

from conftest import ALICE, BOB, ts


def test_increment_decays_with_distance():
    ledger = ExposureLedger()
    assert ledger.exposure_increment(0.0) == pytest.approx(0.062)
    assert ledger.exposure_increment(1.0) == pytest.approx(0.031)
    assert ledger.exposure_increment(2.0) == pytest.approx(0.0155)


def test_repeated_contact_composes_as_independent_events():
    ledger = ExposureLedger()
    first = ledger.record_observation(ALICE, 0.0, ts(1))
    second = ledger.record_observation(ALICE, 0.0, ts(1))
    assert first == pytest.approx(0.062)
    assert second == pytest.approx(0.938 * 0.062)
    assert ledger.get(ALICE).tlot == pytest.approx(0.1202, abs=1e-4)


def test_tlot_stays_bounded_and_monotonic():
    ledger = ExposureLedger()
    prev = 0.0
    for _ in range(500):
        delta = ledger.record_observation(ALICE, 0.0, ts(1))
        cur = ledger.get(ALICE).tlot
        assert delta >= 0.0
        assert prev <= cur <= 1.0
        prev = cur


def test_last_contact_tracks_latest_day():
    ledger = ExposureLedger()
    ledger.record_observation(ALICE, 1.0, ts(1))
    ledger.record_observation(ALICE, 1.0, ts(3))
    assert ledger.get(ALICE).last_contact == dt.date(2020, 4, 3)


@pytest.mark.parametrize("distance", [-0.1, float("nan"), float("inf"), True, "1.0", None])
def test_invalid_distance_is_rejected(distance):
    ledger = ExposureLedger()
    with pytest.raises(InputContractViolation):
        ledger.record_observation(ALICE, distance, ts(1))
    assert ALICE not in ledger


@pytest.mark.parametrize("peer", ["not-a-uuid", b"\x00" * 15, 42])
def test_invalid_peer_id_is_rejected(peer):
    ledger = ExposureLedger()
    with pytest.raises(InputContractViolation):
        ledger.record_observation(peer, 1.0, ts(1))
    assert len(ledger) == 0


def test_peer_id_forms_map_to_same_record():
    ledger = ExposureLedger()
    ledger.record_observation(str(ALICE), 0.0, ts(1))
    ledger.record_observation(ALICE.bytes, 0.0, ts(1))
    assert len(ledger) == 1
    assert ledger.get(ALICE).tlot == pytest.approx(0.1202, abs=1e-4)


def test_export_and_load():
    ledger = ExposureLedger()
    ledger.record_observation(ALICE, 0.5, ts(1))
    ledger.record_observation(BOB, 2.0, ts(2))
    tlot, last = ledger.export()

    other = ExposureLedger()
    other.load(tlot, last)
    assert dict(other.tlot_items()) == tlot
    assert other.get(BOB).last_contact == dt.date(2020, 4, 2)


def test_load_requires_last_contact():
    ledger = ExposureLedger()
    with pytest.raises(ValueError):
        ledger.load({ALICE: 0.2}, {})


def test_constructor_bounds():
    with pytest.raises(ValueError):
        ExposureLedger(base_rate=1.5)
    with pytest.raises(ValueError):
        ExposureLedger(half_life_meters=0.0)
    assert math.isclose(ExposureLedger(half_life_meters=2.0).exposure_increment(2.0), 0.031)


@pytest.mark.parametrize(
    "days_ago, kept",
    [(0, True), (6, True), (7, True), (8, False), (30, False)],
)
def test_retention_horizon(days_ago, kept):
    ledger = ExposureLedger()
    now = dt.datetime(2020, 4, 20, 9, 0)
    ledger.record_observation(ALICE, 1.0, now - dt.timedelta(days=days_ago))
    removed = RetentionManager(ledger, horizon_days=7).expire_stale_contacts(now)
    assert (ALICE in ledger) is kept
    assert removed == (0 if kept else 1)


def test_retention_only_touches_stale_records():
    ledger = ExposureLedger()
    now = dt.datetime(2020, 4, 20, 9, 0)
    ledger.record_observation(ALICE, 1.0, now - dt.timedelta(days=10))
    ledger.record_observation(BOB, 1.0, now - dt.timedelta(days=1))
    assert RetentionManager(ledger).expire_stale_contacts(now) == 1
    assert list(ledger) == [BOB]
