"""
Utility functions for the message store.

Most of this module is the adapter between the wire representation of a
WebMessageInfo (camelCase dict as emitted by the protocol client) and the
column representation stored in the ``messages`` table.
"""

import asyncio
import base64
import logging
from typing import Any, Dict, Optional

from sqlalchemy import BigInteger, Boolean, Integer, JSON, LargeBinary

from wa_store.models import Message

logger = logging.getLogger(__name__)


# Columns that form the row identity; never taken from the payload itself
KEY_COLUMNS = ("pk_id", "session_id", "remote_jid", "id")

# Wire names that do not follow plain camelCase of the column name
_WIRE_OVERRIDES = {
    "message_c2s_timestamp": "messageC2STimestamp",
}

# proto.WebMessageInfo.Status
MESSAGE_STATUS = {
    "ERROR": 0,
    "PENDING": 1,
    "SERVER_ACK": 2,
    "DELIVERY_ACK": 3,
    "READ": 4,
    "PLAYED": 5,
}


def _to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _column_kind(column) -> str:
    if isinstance(column.type, BigInteger):
        return "bigint"
    if isinstance(column.type, Boolean):
        return "bool"
    if isinstance(column.type, Integer):
        return "int"
    if isinstance(column.type, LargeBinary):
        return "bytes"
    if isinstance(column.type, JSON):
        return "json"
    return "str"


PAYLOAD_COLUMNS: Dict[str, str] = {
    column.key: _column_kind(column)
    for column in Message.__table__.columns
    if column.key not in KEY_COLUMNS
}

COLUMN_TO_WIRE: Dict[str, str] = {
    column: _WIRE_OVERRIDES.get(column, _to_camel(column)) for column in PAYLOAD_COLUMNS
}

WIRE_TO_COLUMN: Dict[str, str] = {wire: column for column, wire in COLUMN_TO_WIRE.items()}


# =============================================================================
# Scalar coercion
# =============================================================================

def _is_long(value: Any) -> bool:
    return isinstance(value, dict) and "low" in value and "high" in value and set(value) <= {
        "low", "high", "unsigned"
    }


def to_number(value: Any) -> Optional[int]:
    """
    Coerce protocol numbers to int.

    Accepts ints, floats, numeric strings and Long-like objects
    ({"low": ..., "high": ..., "unsigned": ...}).
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    if _is_long(value):
        low = int(value["low"]) & 0xFFFFFFFF
        high = int(value["high"])
        if value.get("unsigned"):
            high &= 0xFFFFFFFF
        return (high << 32) + low
    raise TypeError(f"Cannot convert {type(value).__name__} to a number")


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return base64.b64decode(value)
    if isinstance(value, dict) and value.get("type") == "Buffer":
        return bytes(value.get("data") or [])
    if isinstance(value, list):
        return bytes(value)
    raise TypeError(f"Cannot convert {type(value).__name__} to bytes")


def _to_json(value: Any) -> Any:
    """Make a nested payload JSON-safe: bytes become base64, Longs become ints."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if _is_long(value):
        return to_number(value)
    if isinstance(value, dict):
        return {k: _to_json(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    return value


def _coerce(column: str, value: Any) -> Any:
    kind = PAYLOAD_COLUMNS[column]
    if kind in ("int", "bigint"):
        if column == "status" and isinstance(value, str) and value in MESSAGE_STATUS:
            return MESSAGE_STATUS[value]
        return to_number(value)
    if kind == "bool":
        return bool(value)
    if kind == "bytes":
        return _to_bytes(value)
    if kind == "json":
        return _to_json(value)
    return str(value)


# =============================================================================
# Transform / serialize
# =============================================================================

def transform_message(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Convert a wire message (or a partial one) into column values.

    Null values are dropped and unknown wire fields are ignored, so the
    result only contains columns the payload actually sets. Identity columns
    (session_id, remote_jid, id) are left to the caller.
    """
    row = {}
    for field, value in data.items():
        column = WIRE_TO_COLUMN.get(field)
        if column is None or value is None:
            continue
        row[column] = _coerce(column, value)
    return row


def message_to_wire(message: Message) -> Dict[str, Any]:
    """Convert a stored row back into wire form, skipping null columns."""
    wire = {}
    for column, wire_name in COLUMN_TO_WIRE.items():
        value = getattr(message, column)
        if value is not None:
            wire[wire_name] = value
    return wire


def serialize_message(message: Message) -> Dict[str, Any]:
    """
    Convert a stored row into a JSON-safe API dict.

    Big integer columns are rendered as strings and binary columns as base64.
    """
    data = {
        "pkId": message.pk_id,
        "sessionId": message.session_id,
        "remoteJid": message.remote_jid,
        "id": message.id,
    }
    for column, wire_name in COLUMN_TO_WIRE.items():
        value = getattr(message, column)
        kind = PAYLOAD_COLUMNS[column]
        if value is not None and kind == "bigint":
            value = str(value)
        elif value is not None and kind == "bytes":
            value = base64.b64encode(value).decode("ascii")
        data[wire_name] = value
    return data


# =============================================================================
# Protocol helpers
# =============================================================================

def jid_normalized_user(jid: Optional[str]) -> str:
    """
    Canonical user jid: drops the device suffix and lower-cases the server.

    "12345:7@S.WhatsApp.net" -> "12345@s.whatsapp.net"
    "12345@c.us"             -> "12345@s.whatsapp.net"
    """
    if not jid or "@" not in jid:
        return ""
    user_combined, _, server = jid.partition("@")
    user = user_combined.split(":", 1)[0]
    server = server.lower()
    if server == "c.us":
        server = "s.whatsapp.net"
    return f"{user}@{server}"


def get_key_author(key: Optional[Dict[str, Any]]) -> str:
    """Author of a message key: "me" for own messages, else participant or chat."""
    if not key:
        return ""
    if key.get("fromMe"):
        return "me"
    return key.get("participant") or key.get("remoteJid") or ""


async def delay(ms: int) -> None:
    """Sleep for the given number of milliseconds."""
    await asyncio.sleep(ms / 1000)
