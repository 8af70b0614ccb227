# FILE: sdeit/kv.py
"""
Canonical byte encodings and digests for signed authority deltas.

The authority signs a digest over a fixed-width, order-independent
encoding of each delta:

    i64  timestamp   (epoch seconds, UTC, big-endian, signed)
    f64  allowance   (IEEE-754, big-endian)
    u32  entry count (big-endian)
    repeated, sorted by peer id bytes:
        16 bytes  peer id (UUID, big-endian)
        f64       risk    (IEEE-754, big-endian)

The digest is BLAKE3-256 over a domain tag followed by that encoding.
Sorting the entries makes the digest independent of the mapping's
iteration order, so signer and verifier always agree.
"""

from __future__ import annotations

import datetime as _dt
import json
import math
import struct
import uuid
from typing import Any, Mapping, Tuple

import blake3

from .utils import epoch_seconds

DELTA_DOMAIN = b"sdeit:v1:delta"
KV_DOMAIN = b"sdeit:v1:kv"

_I64 = struct.Struct("!q")
_U32 = struct.Struct("!I")
_F64 = struct.Struct("!d")


def _encode_f64(value: float) -> bytes:
    """
    Encode float deterministically as IEEE-754 64-bit big-endian.

    NaN and infinities are rejected.
    """
    v = float(value)
    if not math.isfinite(v):
        raise ValueError("NaN or infinite values are not allowed in canonical encoding")
    return _F64.pack(v)


class RollingHasher:
    """
    Streaming BLAKE3 hasher with typed, fixed-width update helpers.

    A label is fed once at construction for domain separation.
    """

    def __init__(self, label: bytes = KV_DOMAIN):
        self._h = blake3.blake3()
        self._h.update(label)
        self._h.update(b"\x00")

    def update_i64(self, value: int) -> None:
        self._h.update(_I64.pack(int(value)))

    def update_u32(self, value: int) -> None:
        self._h.update(_U32.pack(int(value)))

    def update_f64(self, value: float) -> None:
        self._h.update(_encode_f64(value))

    def update_bytes(self, data: bytes) -> None:
        if not data:
            return
        self._h.update(data)

    def update_str(self, value: str) -> None:
        raw = value.encode("utf-8")
        self.update_u32(len(raw))
        self._h.update(raw)

    def update_json(self, obj: Any) -> None:
        payload = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        self.update_str(payload)

    def digest(self) -> bytes:
        return self._h.digest()

    def hex(self) -> str:
        return self._h.hexdigest()


def sorted_risk_entries(risk_updates: Mapping[uuid.UUID, float]) -> Tuple[Tuple[uuid.UUID, float], ...]:
    return tuple(sorted(risk_updates.items(), key=lambda kv: kv[0].bytes))


def canonical_delta_bytes(
    *,
    timestamp: _dt.datetime,
    daily_tlot_increase_allowance: float,
    risk_updates: Mapping[uuid.UUID, float],
) -> bytes:
    """
    Canonical encoding of a delta's signed fields (signature excluded).
    """
    entries = sorted_risk_entries(risk_updates)
    parts = [
        _I64.pack(epoch_seconds(timestamp)),
        _encode_f64(daily_tlot_increase_allowance),
        _U32.pack(len(entries)),
    ]
    for peer_id, risk in entries:
        parts.append(peer_id.bytes)
        parts.append(_encode_f64(risk))
    return b"".join(parts)


def delta_digest(
    *,
    timestamp: _dt.datetime,
    daily_tlot_increase_allowance: float,
    risk_updates: Mapping[uuid.UUID, float],
) -> bytes:
    rh = RollingHasher(DELTA_DOMAIN)
    rh.update_bytes(
        canonical_delta_bytes(
            timestamp=timestamp,
            daily_tlot_increase_allowance=daily_tlot_increase_allowance,
            risk_updates=risk_updates,
        )
    )
    return rh.digest()


def _feed_scalar(h: RollingHasher, value: Any) -> None:
    """
    Feed a scalar with a type tag so that e.g. True and 1 never collide.
    """
    if value is None:
        h.update_bytes(b"t:none;")
    elif isinstance(value, bool):
        h.update_bytes(b"t:bool;1;" if value else b"t:bool;0;")
    elif isinstance(value, int):
        h.update_bytes(b"t:int;")
        h.update_i64(value)
    elif isinstance(value, float):
        h.update_bytes(b"t:float;")
        h.update_f64(value)
    elif isinstance(value, str):
        h.update_bytes(b"t:str;")
        h.update_str(value)
    else:
        h.update_bytes(b"t:json;")
        h.update_json(value)


def canonical_kv_hash(mapping: Mapping[str, Any], *, label: bytes = KV_DOMAIN) -> str:
    """
    Insertion-order independent hash of a flat mapping (keys sorted as strings).
    """
    rh = RollingHasher(label)
    for k in sorted(mapping.keys(), key=str):
        rh.update_bytes(b"k:")
        rh.update_str(str(k))
        rh.update_bytes(b"v:")
        _feed_scalar(rh, mapping[k])
    return rh.hex()

