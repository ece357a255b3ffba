from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Union


class RequestKind(str, Enum):
    SEND = "send"
    ASK = "ask"


class ResponseStatus(str, Enum):
    PENDING = "pending"
    ANSWERED = "answered"
    TIMEOUT = "timeout"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not ResponseStatus.PENDING


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text or None


def _optional_int(value: Any, field_name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field_name} must be a number when set")
    return int(value)


def _require(data: dict[str, Any], key: str, kind: str) -> Any:
    if key not in data:
        raise ValueError(f"{kind} missing required field: {key}")
    return data[key]


def _require_int(data: dict[str, Any], key: str, kind: str) -> int:
    value = _optional_int(_require(data, key, kind), key)
    if value is None:
        raise ValueError(f"{kind} {key} must be a number")
    return value


@dataclass(frozen=True)
class OriginInfo:
    """Who asked: the originating agent process and its session."""

    pid: int
    cwd: str
    session_id: Optional[str] = None
    session_name: Optional[str] = None
    project_name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.session_name or self.project_name or "session"

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "cwd": self.cwd,
            "session_id": self.session_id,
            "session_name": self.session_name,
            "project_name": self.project_name,
        }

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"pid": self.pid, "cwd": self.cwd}
        if self.session_id:
            payload["sessionId"] = self.session_id
        if self.session_name:
            payload["sessionName"] = self.session_name
        if self.project_name:
            payload["projectName"] = self.project_name
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OriginInfo":
        if not isinstance(data, dict):
            raise ValueError("origin payload must be a dict")
        pid = _require_int(data, "pid", "origin")
        cwd = data.get("cwd")
        if not isinstance(cwd, str) or not cwd:
            raise ValueError("origin cwd must be a non-empty string")
        return cls(
            pid=pid,
            cwd=cwd,
            session_id=_optional_str(data.get("session_id", data.get("sessionId"))),
            session_name=_optional_str(
                data.get("session_name", data.get("sessionName"))
            ),
            project_name=_optional_str(
                data.get("project_name", data.get("projectName"))
            ),
        )


@dataclass(frozen=True)
class PendingRequest:
    id: str
    kind: RequestKind
    message: str
    origin: OriginInfo
    created_at: int
    timeout_ms: int
    no_wait: bool = False
    options: tuple[str, ...] = ()
    external_message_ref: Optional[str] = None
    channel_ref: Optional[str] = None
    deadline_at: Optional[int] = None

    @property
    def waits_for_answer(self) -> bool:
        return self.kind is RequestKind.ASK and not self.no_wait

    def with_external_ref(
        self, ref: str, *, channel_ref: Optional[str] = None
    ) -> "PendingRequest":
        return replace(
            self,
            external_message_ref=ref,
            channel_ref=channel_ref if channel_ref is not None else self.channel_ref,
        )

    def with_deadline(self, deadline_at: Optional[int]) -> "PendingRequest":
        return replace(self, deadline_at=deadline_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "message": self.message,
            "options": list(self.options),
            "origin": self.origin.to_dict(),
            "external_message_ref": self.external_message_ref,
            "channel_ref": self.channel_ref,
            "created_at": self.created_at,
            "timeout_ms": self.timeout_ms,
            "no_wait": self.no_wait,
            "deadline_at": self.deadline_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingRequest":
        if not isinstance(data, dict):
            raise ValueError("request payload must be a dict")
        request_id = _require(data, "id", "request")
        if not isinstance(request_id, str) or not request_id:
            raise ValueError("request id must be a non-empty string")
        message = _require(data, "message", "request")
        if not isinstance(message, str):
            raise ValueError("request message must be a string")
        options_raw = data.get("options") or []
        if not isinstance(options_raw, list):
            raise ValueError("request options must be a list")
        return cls(
            id=request_id,
            kind=RequestKind(_require(data, "kind", "request")),
            message=message,
            origin=OriginInfo.from_dict(_require(data, "origin", "request")),
            created_at=_require_int(data, "created_at", "request"),
            timeout_ms=_require_int(data, "timeout_ms", "request"),
            no_wait=bool(data.get("no_wait", False)),
            options=tuple(str(option) for option in options_raw),
            external_message_ref=_optional_str(data.get("external_message_ref")),
            channel_ref=_optional_str(data.get("channel_ref")),
            deadline_at=_optional_int(data.get("deadline_at"), "deadline_at"),
        )


@dataclass(frozen=True)
class PendingResponse:
    request_id: str
    status: ResponseStatus = ResponseStatus.PENDING
    answer_text: Optional[str] = None
    answered_at: Optional[int] = None
    error_detail: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "request_id": self.request_id,
            "status": self.status.value,
        }
        if self.status is ResponseStatus.ANSWERED:
            payload["answer_text"] = self.answer_text
            payload["answered_at"] = self.answered_at
        if self.status is ResponseStatus.ERROR:
            payload["error_detail"] = self.error_detail
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingResponse":
        if not isinstance(data, dict):
            raise ValueError("response payload must be a dict")
        request_id = _require(data, "request_id", "response")
        if not isinstance(request_id, str) or not request_id:
            raise ValueError("response request_id must be a non-empty string")
        status = ResponseStatus(data.get("status", ResponseStatus.PENDING.value))
        return cls(
            request_id=request_id,
            status=status,
            answer_text=(
                str(data.get("answer_text") or "")
                if status is ResponseStatus.ANSWERED
                else None
            ),
            answered_at=(
                _optional_int(data.get("answered_at"), "answered_at")
                if status is ResponseStatus.ANSWERED
                else None
            ),
            error_detail=(
                _optional_str(data.get("error_detail"))
                if status is ResponseStatus.ERROR
                else None
            ),
        )


@dataclass(frozen=True)
class TerminalBinding:
    pid: int
    cwd: str
    session_id: Optional[str] = None
    alive: bool = True
    created_at: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "cwd": self.cwd,
            "session_id": self.session_id,
            "alive": self.alive,
            "created_at": self.created_at,
        }

    @classmethod
    def from_origin(cls, origin: OriginInfo, *, created_at: int) -> "TerminalBinding":
        return cls(
            pid=origin.pid,
            cwd=origin.cwd,
            session_id=origin.session_id,
            alive=True,
            created_at=created_at,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TerminalBinding":
        if not isinstance(data, dict):
            raise ValueError("terminal payload must be a dict")
        pid = _require_int(data, "pid", "terminal")
        cwd = data.get("cwd")
        if not isinstance(cwd, str):
            raise ValueError("terminal cwd must be a string")
        return cls(
            pid=pid,
            cwd=cwd,
            session_id=_optional_str(data.get("session_id")),
            alive=bool(data.get("alive", True)),
            created_at=_optional_int(data.get("created_at"), "created_at"),
        )


@dataclass(frozen=True)
class RequestAnswered:
    request_id: str
    answer_text: str
    answered_at: int


@dataclass(frozen=True)
class RequestTimedOut:
    request_id: str


@dataclass(frozen=True)
class RequestErrored:
    request_id: str
    detail: str
    code: str = "DELIVERY_FAILED"


RequestEvent = Union[RequestAnswered, RequestTimedOut, RequestErrored]


@dataclass
class StoreSnapshot:
    requests: dict[str, PendingRequest] = field(default_factory=dict)
    responses: dict[str, PendingResponse] = field(default_factory=dict)
    message_to_request: dict[str, str] = field(default_factory=dict)
    terminals: dict[str, TerminalBinding] = field(default_factory=dict)


__all__ = [
    "OriginInfo",
    "PendingRequest",
    "PendingResponse",
    "RequestAnswered",
    "RequestErrored",
    "RequestEvent",
    "RequestKind",
    "RequestTimedOut",
    "ResponseStatus",
    "StoreSnapshot",
    "TerminalBinding",
]
