# sdeit/tests/test_schemas.py
import base64
import datetime as dt
import uuid

import pytest
from pydantic import ValidationError

from sdeit.schemas import AlertState, DeltaPayload, EngineSnapshot, InputContractViolation, parse_peer_id
from sdeit.utils import short_tag
from sdeit.verify import DeltaVerifier

from conftest import ALICE, ts


def test_parse_peer_id_forms():
    assert parse_peer_id(ALICE) is ALICE
    assert parse_peer_id(str(ALICE)) == ALICE
    assert parse_peer_id(ALICE.bytes) == ALICE
    with pytest.raises(InputContractViolation):
        parse_peer_id("zzz")
    # also a ValueError for callers that only know the builtin
    with pytest.raises(ValueError):
        parse_peer_id(b"\x00")


def test_payload_round_trip_verifies(signer, make_delta):
    msg = make_delta({ALICE: 0.25}, timestamp=ts(1), allowance=2.0)
    wire = DeltaPayload.from_message(msg).model_dump(mode="json")
    assert wire["risk_updates"] == {str(ALICE): 0.25}

    parsed = DeltaPayload.model_validate(wire).to_message(source="authority")
    assert parsed == msg
    assert parsed.source == "authority"

    merger = DeltaVerifier(signer.verifier())
    assert merger.verify_and_merge([parsed]).applied_count == 1


def test_payload_from_wire_dict():
    sig = base64.b64encode(b"\x07" * 64).decode("ascii")
    payload = DeltaPayload.model_validate(
        {
            "signature": sig,
            "risk_updates": {"00000000-0000-0000-0000-000000000001": 0.5},
            "daily_tlot_increase_allowance": 1.5,
            "timestamp": "2020-04-01T12:00:00Z",
        }
    )
    msg = payload.to_message()
    assert msg.signature == b"\x07" * 64
    assert msg.risk_updates == {ALICE: 0.5}
    assert msg.timestamp == ts(1)


@pytest.mark.parametrize(
    "patch",
    [
        {"signature": "not base64!"},
        {"risk_updates": {"nope": 0.1}},
        {"unexpected": 1},
    ],
)
def test_payload_rejects_bad_wire_data(patch):
    doc = {
        "signature": base64.b64encode(b"\x00" * 64).decode("ascii"),
        "daily_tlot_increase_allowance": 1.0,
        "timestamp": "2020-04-01T12:00:00Z",
    }
    doc.update(patch)
    with pytest.raises(ValidationError):
        DeltaPayload.model_validate(doc)


def test_snapshot_rejects_out_of_range_values():
    with pytest.raises(ValidationError):
        EngineSnapshot(daily_tlot_increase_allowance=1.0, exposure_tlot={ALICE: 1.5})
    with pytest.raises(ValidationError):
        EngineSnapshot(daily_tlot_increase_allowance=1.0, covered_contributions={ALICE: 2.0})
    snap = EngineSnapshot(
        daily_tlot_increase_allowance=1.0,
        exposure_tlot={ALICE: 0.5},
        last_contact={ALICE: dt.date(2020, 4, 1)},
        alert_state="test_recommended",
    )
    assert snap.alert_state is AlertState.TEST_RECOMMENDED


def test_short_tag_hides_identifier():
    tag = short_tag(ALICE.bytes)
    assert tag.startswith("peer-h-")
    assert ALICE.hex not in tag
    assert tag == short_tag(ALICE.bytes)
    assert tag != short_tag(uuid.UUID(int=2).bytes)


@pytest.mark.parametrize("model", [DeltaPayload, EngineSnapshot])
def test_models_forbid_extra_fields(model):
    assert model.model_config["extra"] == "forbid"
