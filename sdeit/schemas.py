# FILE: sdeit/schemas.py
from __future__ import annotations

import base64
import binascii
import datetime as _dt
import types
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Errors shared across modules
# =============================================================================


class SdeitError(Exception):
    """Base error for the exposure-risk engine."""


class InputContractViolation(SdeitError, ValueError):
    """A single observation (distance or peer id) violates the input contract."""


# =============================================================================
# Peer identifiers
# =============================================================================

PeerId = uuid.UUID


def parse_peer_id(value: Any) -> PeerId:
    """
    Coerce a UUID, a UUID string, or 16 raw bytes into a PeerId.
    """
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 16:
            raise InputContractViolation(f"peer id must be 16 bytes, got {len(value)}")
        return uuid.UUID(bytes=bytes(value))
    if isinstance(value, str):
        try:
            return uuid.UUID(value)
        except ValueError as e:
            raise InputContractViolation(f"malformed peer id: {e}") from e
    raise InputContractViolation(f"unsupported peer id type: {type(value).__name__}")


# =============================================================================
# Alert state
# =============================================================================


class Indicator(str, Enum):
    """Diode colours driven by the display collaborator."""

    GREEN = "green"
    GREEN_BLINK = "green_blink"
    YELLOW = "yellow"
    YELLOW_BLINK = "yellow_blink"
    RED = "red"
    RED_BLINK = "red_blink"


class AlertState(str, Enum):
    """
    Externally observable alert state.

    Nearby variants blink: somebody is close and the allowance is being
    eaten up right now.
    """

    NOMINAL_IDLE = "nominal/idle"
    NOMINAL_NEARBY = "nominal/nearby"
    ALLOWANCE_WARNING_IDLE = "allowance_warning/idle"
    ALLOWANCE_WARNING_NEARBY = "allowance_warning/nearby"
    ALLOWANCE_EXCEEDED = "allowance_exceeded"
    TEST_RECOMMENDED = "test_recommended"

    @property
    def indicator(self) -> Indicator:
        return _INDICATORS[self]

    @property
    def is_sticky(self) -> bool:
        return self is AlertState.TEST_RECOMMENDED


_INDICATORS: Dict[AlertState, Indicator] = {
    AlertState.NOMINAL_IDLE: Indicator.GREEN,
    AlertState.NOMINAL_NEARBY: Indicator.GREEN_BLINK,
    AlertState.ALLOWANCE_WARNING_IDLE: Indicator.YELLOW,
    AlertState.ALLOWANCE_WARNING_NEARBY: Indicator.YELLOW_BLINK,
    AlertState.ALLOWANCE_EXCEEDED: Indicator.RED,
    AlertState.TEST_RECOMMENDED: Indicator.RED_BLINK,
}


# =============================================================================
# Authority deltas
# =============================================================================


@dataclass(frozen=True)
class DeltaMessage:
    """
    One authority-issued update batch.

    Values are not validated here; the verifier rejects malformed messages
    as a whole batch. The risk mapping is copied into a read-only view so the
    message cannot change after construction.
    """

    signature: bytes
    risk_updates: Mapping[PeerId, float]
    daily_tlot_increase_allowance: float
    timestamp: _dt.datetime
    source: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "risk_updates", types.MappingProxyType(dict(self.risk_updates))
        )


class DeltaPayload(BaseModel):
    """
    Wire shape of a delta as delivered by the network collaborator.

    {
      "signature": "<base64>",
      "risk_updates": {"<uuid>": 0.3, ...},
      "daily_tlot_increase_allowance": 1.5,
      "timestamp": "2020-04-01T12:00:00Z"
    }
    """

    signature: str = Field(..., description="Base64 Ed25519 signature over the delta digest")
    risk_updates: Dict[uuid.UUID, float] = Field(default_factory=dict)
    daily_tlot_increase_allowance: float
    timestamp: _dt.datetime

    model_config = ConfigDict(extra="forbid")

    @field_validator("signature")
    @classmethod
    def _check_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"signature is not valid base64: {e}") from e
        return v

    def to_message(self, *, source: Optional[str] = None) -> DeltaMessage:
        return DeltaMessage(
            signature=base64.b64decode(self.signature),
            risk_updates=dict(self.risk_updates),
            daily_tlot_increase_allowance=self.daily_tlot_increase_allowance,
            timestamp=self.timestamp,
            source=source,
        )

    @classmethod
    def from_message(cls, msg: DeltaMessage) -> "DeltaPayload":
        return cls(
            signature=base64.b64encode(msg.signature).decode("ascii"),
            risk_updates=dict(msg.risk_updates),
            daily_tlot_increase_allowance=msg.daily_tlot_increase_allowance,
            timestamp=msg.timestamp,
        )


# =============================================================================
# Engine snapshot (host-side persistence)
# =============================================================================


class EngineSnapshot(BaseModel):
    """
    Serializable engine state: PeerId -> float maps plus EngineState scalars.

    The engine never writes this anywhere itself; the host application owns
    persistence.
    """

    exposure_tlot: Dict[uuid.UUID, float] = Field(default_factory=dict)
    last_contact: Dict[uuid.UUID, _dt.date] = Field(default_factory=dict)
    known_infection_risk: Dict[uuid.UUID, float] = Field(default_factory=dict)

    last_delta_update_timestamp: Optional[_dt.datetime] = None
    daily_tlot_increase_allowance: float
    sum_of_tlot_increase_today: float = 0.0
    period_date: Optional[_dt.date] = None
    alert_state: AlertState = AlertState.NOMINAL_IDLE
    # per-peer contribution already ruled out by the last negative test
    covered_contributions: Dict[uuid.UUID, float] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @field_validator("exposure_tlot", "known_infection_risk", "covered_contributions")
    @classmethod
    def _check_unit_interval(cls, v: Dict[uuid.UUID, float]) -> Dict[uuid.UUID, float]:
        for pid, x in v.items():
            if not (0.0 <= x <= 1.0):
                raise ValueError(f"value for {pid} outside [0, 1]: {x}")
        return v
