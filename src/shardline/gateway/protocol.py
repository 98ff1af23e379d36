"""
gateway/protocol.py — Gateway Wire Protocol

Opcode table and payload envelope for the sharded gateway. Every frame is
an envelope ``{op, d, s, t}``; ``s`` and ``t`` are only set on dispatches.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Opcodes
# ─────────────────────────────────────────────────────────────────────────────

class OpCode(IntEnum):
    """Gateway opcodes this client sends or understands."""

    DISPATCH        = 0    # inbound
    HEARTBEAT       = 1    # outbound (inbound = server asks for one now)
    IDENTIFY        = 2    # outbound
    RESUME          = 6    # outbound
    RECONNECT       = 7    # inbound
    INVALID_SESSION = 9    # inbound
    HELLO           = 10   # inbound
    HEARTBEAT_ACK   = 11   # inbound


# Dispatch types the connection itself reacts to.
READY = "READY"
RESUMED = "RESUMED"

LARGE_THRESHOLD = 250


# ─────────────────────────────────────────────────────────────────────────────
# Envelope
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GatewayPayload:
    """A decoded inbound frame."""
    op: int
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "GatewayPayload":
        """Build from a decoded mapping; raises ValueError when it isn't an envelope."""
        if not isinstance(raw, dict) or "op" not in raw:
            raise ValueError(f"not a gateway envelope: {raw!r:.80}")
        op = raw["op"]
        if not isinstance(op, int):
            raise ValueError(f"opcode must be an integer, got {op!r}")
        seq = raw.get("s")
        if seq is not None and not isinstance(seq, int):
            raise ValueError(f"sequence must be an integer or null, got {seq!r}")
        return cls(op=op, d=raw.get("d"), s=seq, t=raw.get("t"))

    def to_dict(self) -> dict[str, Any]:
        return {"op": self.op, "d": self.d, "s": self.s, "t": self.t}


# ─────────────────────────────────────────────────────────────────────────────
# Factory helpers (client → server payloads)
# ─────────────────────────────────────────────────────────────────────────────

def make_heartbeat(last_sequence: Optional[int]) -> dict[str, Any]:
    """Build a HEARTBEAT payload carrying the last seen sequence number."""
    return {"op": OpCode.HEARTBEAT.value, "d": last_sequence}


def make_identify(
    token: str,
    shard_id: int,
    shard_count: int,
    *,
    properties: Optional[dict[str, str]] = None,
    large_threshold: int = LARGE_THRESHOLD,
) -> dict[str, Any]:
    """Build an IDENTIFY payload for one shard of ``shard_count``."""
    return {
        "op": OpCode.IDENTIFY.value,
        "d": {
            "token": token,
            "properties": dict(properties or {}),
            "shard": [shard_id, shard_count],
            "compress": False,
            "large_threshold": large_threshold,
            "presence": {},
        },
    }


def make_resume(token: str, session_id: str, last_sequence: Optional[int]) -> dict[str, Any]:
    """Build a RESUME payload for a previously identified session."""
    return {
        "op": OpCode.RESUME.value,
        "d": {
            "token": token,
            "session_id": session_id,
            "seq": last_sequence,
        },
    }
