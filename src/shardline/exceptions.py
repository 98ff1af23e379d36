"""
exceptions.py — Shardline Unified Error Hierarchy

All shardline-specific exceptions live here. Every layer raises typed
subclasses of ShardlineError, never bare Exception.

Import from here, not from individual modules:
    from shardline.exceptions import GatewayInfoError, ShardNotFoundError

Hierarchy:
    ShardlineError
    ├── ConfigError
    ├── CodecError
    │   ├── CodecUnavailableError
    │   └── PayloadDecodeError
    ├── GatewayError
    │   ├── GatewayInfoError
    │   ├── GatewayProtocolError
    │   └── ShardNotConnectedError
    └── ShardNotFoundError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class ShardlineError(Exception):
    """Base class for all shardline exceptions."""


class ConfigError(ShardlineError):
    """Raised by Settings.validate_all() when configuration problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Codec layer
# ─────────────────────────────────────────────────────────────────────────────

class CodecError(ShardlineError):
    """Base for payload encoding errors."""


class CodecUnavailableError(CodecError):
    """The requested codec's backing library is not installed."""


class PayloadDecodeError(CodecError):
    """An inbound frame could not be decoded into a payload envelope."""


# ─────────────────────────────────────────────────────────────────────────────
# Gateway layer
# ─────────────────────────────────────────────────────────────────────────────

class GatewayError(ShardlineError):
    """Base for gateway connection errors."""


class GatewayInfoError(GatewayError):
    """The gateway metadata lookup failed; no shard can be started."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayProtocolError(GatewayError):
    """The server sent something the handshake did not expect."""


class ShardNotConnectedError(GatewayError):
    """A send was attempted on a shard without an open socket."""


class ShardNotFoundError(ShardlineError, LookupError):
    """No connection exists at the addressed shard index."""

    def __init__(self, shard_id: int):
        super().__init__(f"No shard connection at index {shard_id}")
        self.shard_id = shard_id
