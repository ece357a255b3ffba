"""Newline-delimited JSON records exchanged over the daemon socket.

Every record is ``{"type": <kind>, "data": {...}}`` followed by ``\\n``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from ..core.exceptions import ProtocolError
from ..core.pending.models import OriginInfo, PendingRequest, PendingResponse

RECORD_SEPARATOR = b"\n"
MAX_OPTIONS = 25
MAX_LINE_BYTES = 1024 * 1024

PARSE_ERROR = "PARSE_ERROR"
UNKNOWN_TYPE = "UNKNOWN_TYPE"
INVALID_REQUEST = "INVALID_REQUEST"
NOT_FOUND = "NOT_FOUND"
DELIVERY_FAILED = "DELIVERY_FAILED"
CANCELLED = "CANCELLED"
INTERNAL_ERROR = "INTERNAL_ERROR"

TERMINAL_TYPES = frozenset({"response", "timeout", "error"})


@dataclass(frozen=True)
class SendCommand:
    message: str
    origin: OriginInfo


@dataclass(frozen=True)
class AskCommand:
    message: str
    origin: OriginInfo
    options: tuple[str, ...] = ()
    timeout_ms: Optional[int] = None
    no_wait: bool = False


@dataclass(frozen=True)
class StatusCommand:
    request_id: str


@dataclass(frozen=True)
class CancelCommand:
    request_id: str


ClientCommand = Union[SendCommand, AskCommand, StatusCommand, CancelCommand]


class MessageFramer:
    """Accumulates stream bytes and yields complete, non-blank lines."""

    def __init__(self, *, max_line_bytes: int = MAX_LINE_BYTES) -> None:
        self._buffer = bytearray()
        self._max_line_bytes = max_line_bytes

    def feed(self, data: bytes) -> list[str]:
        self._buffer.extend(data)
        lines: list[str] = []
        while True:
            index = self._buffer.find(RECORD_SEPARATOR)
            if index < 0:
                break
            raw = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            text = raw.decode("utf-8", errors="replace").strip()
            if text:
                lines.append(text)
        if len(self._buffer) > self._max_line_bytes:
            self._buffer.clear()
            raise ProtocolError("Record exceeds maximum line length")
        return lines

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)


def encode_message(message: dict[str, Any]) -> bytes:
    return json.dumps(message, ensure_ascii=False).encode("utf-8") + RECORD_SEPARATOR


def _require_str(data: dict[str, Any], key: str, *, allow_empty: bool = False) -> str:
    value = data.get(key)
    if not isinstance(value, str) or (not allow_empty and not value.strip()):
        raise ProtocolError(
            f"Field '{key}' must be a non-empty string", code=INVALID_REQUEST
        )
    return value


def _parse_origin(data: dict[str, Any]) -> OriginInfo:
    raw = data.get("sessionInfo")
    if not isinstance(raw, dict):
        raise ProtocolError("Field 'sessionInfo' must be an object", code=INVALID_REQUEST)
    try:
        return OriginInfo.from_dict(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Invalid sessionInfo: {exc}", code=INVALID_REQUEST) from exc


def _parse_options(data: dict[str, Any]) -> tuple[str, ...]:
    raw = data.get("options")
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ProtocolError("Field 'options' must be a list of strings", code=INVALID_REQUEST)
    options = tuple(item.strip() for item in raw if item.strip())
    if len(options) > MAX_OPTIONS:
        raise ProtocolError(
            f"At most {MAX_OPTIONS} options are supported", code=INVALID_REQUEST
        )
    return options


def _parse_timeout(data: dict[str, Any]) -> Optional[int]:
    raw = data.get("timeout")
    if raw is None:
        return None
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ProtocolError("Field 'timeout' must be a number", code=INVALID_REQUEST)
    return int(raw)


def parse_client_message(line: str) -> ClientCommand:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ProtocolError("Invalid JSON") from exc
    if not isinstance(payload, dict):
        raise ProtocolError("Record must be a JSON object")
    message_type = payload.get("type")
    data = payload.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ProtocolError("Field 'data' must be an object", code=INVALID_REQUEST)

    if message_type == "send":
        return SendCommand(message=_require_str(data, "message"), origin=_parse_origin(data))
    if message_type == "ask":
        no_wait = data.get("noWait", False)
        if not isinstance(no_wait, bool):
            raise ProtocolError("Field 'noWait' must be a boolean", code=INVALID_REQUEST)
        return AskCommand(
            message=_require_str(data, "message"),
            origin=_parse_origin(data),
            options=_parse_options(data),
            timeout_ms=_parse_timeout(data),
            no_wait=no_wait,
        )
    if message_type == "status":
        return StatusCommand(request_id=_require_str(data, "requestId"))
    if message_type == "cancel":
        return CancelCommand(request_id=_require_str(data, "requestId"))
    raise ProtocolError(f"Unknown message type: {message_type!r}", code=UNKNOWN_TYPE)


# Client-side builders


def send_message(message: str, origin: OriginInfo) -> dict[str, Any]:
    return {"type": "send", "data": {"message": message, "sessionInfo": origin.to_wire()}}


def ask_message(
    message: str,
    origin: OriginInfo,
    *,
    options: Optional[list[str]] = None,
    timeout_ms: Optional[int] = None,
    no_wait: bool = False,
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "message": message,
        "sessionInfo": origin.to_wire(),
        "noWait": no_wait,
    }
    if options:
        data["options"] = list(options)
    if timeout_ms is not None:
        data["timeout"] = timeout_ms
    return {"type": "ask", "data": data}


def status_message(request_id: str) -> dict[str, Any]:
    return {"type": "status", "data": {"requestId": request_id}}


def cancel_message(request_id: str) -> dict[str, Any]:
    return {"type": "cancel", "data": {"requestId": request_id}}


# Daemon-side builders


def ack(request_id: str, discord_message_id: str) -> dict[str, Any]:
    return {
        "type": "ack",
        "data": {"requestId": request_id, "discordMessageId": discord_message_id},
    }


def response(request_id: str, answer_text: str, answered_at: int) -> dict[str, Any]:
    return {
        "type": "response",
        "data": {
            "requestId": request_id,
            "response": answer_text,
            "answeredAt": answered_at,
        },
    }


def timeout(request_id: str) -> dict[str, Any]:
    return {"type": "timeout", "data": {"requestId": request_id}}


def error(code: str, message: str, *, request_id: Optional[str] = None) -> dict[str, Any]:
    data: dict[str, Any] = {"code": code, "message": message}
    if request_id is not None:
        data["requestId"] = request_id
    return {"type": "error", "data": data}


def status(
    request: PendingRequest, pending_response: Optional[PendingResponse]
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "requestId": request.id,
        "kind": request.kind.value,
        "status": pending_response.status.value if pending_response else "pending",
    }
    if pending_response is not None:
        if pending_response.answer_text is not None:
            data["response"] = pending_response.answer_text
        if pending_response.answered_at is not None:
            data["answeredAt"] = pending_response.answered_at
        if pending_response.error_detail is not None:
            data["error"] = pending_response.error_detail
    if request.external_message_ref:
        data["discordMessageId"] = request.external_message_ref
    return {"type": "status", "data": data}


def is_terminal_message(message: dict[str, Any]) -> bool:
    return message.get("type") in TERMINAL_TYPES
