"""Line payload codec: JSON decode, provenance enrichment and body encoding.

Each serial line carries exactly one JSON object. Decoding is strict: the
whole trimmed line must parse as a single object or it is rejected. Enriching
adds two reserved fields, :data:`~serialingest.const.INGESTED_AT_FIELD` and
:data:`~serialingest.const.SOURCE_FIELD`. A device that sends fields with
those names has them overwritten.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Final

import msgspec

from .const import INGESTED_AT_FIELD, SOURCE_FIELD, SOURCE_TAG

INVALID_STRUCTURE: Final[str] = "invalid_structure"

_decoder = msgspec.json.Decoder(dict[str, Any])
_encoder = msgspec.json.Encoder()


class DecodeError(ValueError):
    """A non-empty line that is not exactly one JSON object."""

    def __init__(self, raw: str, detail: str, reason: str = INVALID_STRUCTURE) -> None:
        super().__init__(f"{reason}: {detail}")
        self.raw = raw
        self.detail = detail
        self.reason = reason


class Record(msgspec.Struct, frozen=True):
    """One decoded line, owned by its delivery task until delivered or dropped."""

    payload: dict[str, Any]

    def __contains__(self, key: object) -> bool:
        return key in self.payload

    def __getitem__(self, key: str) -> Any:
        return self.payload[key]


def decode(raw: str | bytes) -> Record | None:
    """Decode one raw line.

    Returns ``None`` for blank input (nothing to forward) and raises
    :class:`DecodeError` for anything that is not a single JSON object.
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else raw
    trimmed = text.strip()
    if not trimmed:
        return None
    try:
        payload = _decoder.decode(trimmed)
    except msgspec.DecodeError as exc:
        raise DecodeError(trimmed, str(exc)) from exc
    except RecursionError as exc:
        # msgspec bails out of deeply nested input with a RecursionError.
        raise DecodeError(trimmed, "nesting too deep") from exc
    return Record(payload=payload)


def format_timestamp(now: datetime) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. ``2024-05-01T12:00:00.000Z``."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def enrich(record: Record, now: datetime) -> Record:
    """Return a copy of *record* carrying the ingestion timestamp and source tag."""
    payload = dict(record.payload)
    payload[INGESTED_AT_FIELD] = format_timestamp(now)
    payload[SOURCE_FIELD] = SOURCE_TAG
    return Record(payload=payload)


def encode(record: Record) -> bytes:
    return _encoder.encode(record.payload)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


__all__ = [
    "DecodeError",
    "INVALID_STRUCTURE",
    "Record",
    "decode",
    "encode",
    "enrich",
    "format_timestamp",
    "utcnow",
]
