"""
gateway/codec.py — Payload Codecs

Two interchangeable codecs, chosen once per process and injected into the
ShardManager:

    json   always available, text frames
    etf    Erlang term format via the optional ``erlpack`` package,
           binary frames

The codec's ``name`` is sent as the ``encoding`` query parameter on every
socket the process opens.
"""

from __future__ import annotations

import importlib
import importlib.util
import json
from dataclasses import dataclass
from typing import Any, Callable, Literal

from shardline.exceptions import CodecUnavailableError, PayloadDecodeError
from shardline.observability.logger import get_logger

log = get_logger(__name__)

CodecPreference = Literal["auto", "json", "etf"]

_ETF_MODULE = "erlpack"


@dataclass(frozen=True)
class Codec:
    """An encode/decode capability. Not meant to be subclassed."""
    name: str
    encode: Callable[[Any], str | bytes]
    decode: Callable[[str | bytes], Any]


# ─────────────────────────────────────────────────────────────────────────────
# JSON
# ─────────────────────────────────────────────────────────────────────────────

def _json_encode(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def _json_decode(raw: str | bytes) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise PayloadDecodeError(f"invalid JSON frame: {exc}") from exc


JSON_CODEC = Codec(name="json", encode=_json_encode, decode=_json_decode)


# ─────────────────────────────────────────────────────────────────────────────
# ETF
# ─────────────────────────────────────────────────────────────────────────────

def _to_text(value: Any) -> Any:
    """ETF binaries come back as bytes; gateway payloads only carry text."""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, dict):
        return {_to_text(k): _to_text(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_text(v) for v in value]
    return value


def etf_available() -> bool:
    """True when the erlpack extension can be imported."""
    return importlib.util.find_spec(_ETF_MODULE) is not None


def make_etf_codec() -> Codec:
    """Build the ETF codec; raises CodecUnavailableError without erlpack."""
    try:
        erlpack = importlib.import_module(_ETF_MODULE)
    except ImportError as exc:
        raise CodecUnavailableError(
            "ETF encoding requires the 'erlpack' package. "
            "Install: pip install 'shardline[etf]'"
        ) from exc

    def _decode(raw: str | bytes) -> Any:
        if isinstance(raw, str):
            raise PayloadDecodeError("ETF codec received a text frame")
        try:
            return _to_text(erlpack.unpack(raw))
        except Exception as exc:  # erlpack raises its own untyped errors
            raise PayloadDecodeError(f"invalid ETF frame: {exc}") from exc

    return Codec(name="etf", encode=erlpack.pack, decode=_decode)


# ─────────────────────────────────────────────────────────────────────────────
# Selection
# ─────────────────────────────────────────────────────────────────────────────

def select_codec(preference: CodecPreference = "auto") -> Codec:
    """
    Resolve the configured encoding preference to a codec.

    ``auto`` looks for erlpack and falls back to JSON; ``etf`` insists on
    erlpack; ``json`` never looks.
    """
    if preference == "json":
        codec = JSON_CODEC
    elif preference == "etf":
        codec = make_etf_codec()
    elif preference == "auto":
        codec = make_etf_codec() if etf_available() else JSON_CODEC
    else:
        raise ValueError(f"unknown encoding preference '{preference}'")
    log.info("codec.selected", codec=codec.name, preference=preference)
    return codec
