from .coordinator import EventSink, RequestCoordinator, RestoreSummary
from .models import (
    OriginInfo,
    PendingRequest,
    PendingResponse,
    RequestAnswered,
    RequestErrored,
    RequestEvent,
    RequestKind,
    RequestTimedOut,
    ResponseStatus,
    StoreSnapshot,
    TerminalBinding,
)
from .store import PendingStore

__all__ = [
    "EventSink",
    "OriginInfo",
    "PendingRequest",
    "PendingResponse",
    "PendingStore",
    "RequestAnswered",
    "RequestCoordinator",
    "RequestErrored",
    "RequestEvent",
    "RequestKind",
    "RequestTimedOut",
    "ResponseStatus",
    "RestoreSummary",
    "StoreSnapshot",
    "TerminalBinding",
]
