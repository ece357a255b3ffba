from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ..config import TimeoutConfig
from ..logging_utils import log_event
from ..time_utils import now_ms
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
    TerminalBinding,
)
from .store import PendingStore

EventSink = Callable[[RequestEvent], None]

RESTART_UNDELIVERED_DETAIL = "daemon restarted before delivery"


@dataclass
class _RequestSlot:
    request: PendingRequest
    timer: Optional[asyncio.TimerHandle] = None

    def clear_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


@dataclass(frozen=True)
class RestoreSummary:
    loaded: int
    rearmed: int
    grace_rearmed: int
    errored: int
    pruned: int


class RequestCoordinator:
    """Single owner of pending requests, responses, the message index and the
    terminal bindings.

    Every method runs synchronously to completion, so callers on the event
    loop never observe a half-applied mutation. Each mutation is written to
    the store before the method returns. Terminal statuses are first-writer
    wins: once a response is answered, timed out or errored, later answers and
    timer firings are ignored.
    """

    def __init__(
        self,
        store: PendingStore,
        timeouts: TimeoutConfig,
        *,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._store = store
        self._timeouts = timeouts
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._id_factory = id_factory
        self._loop = loop
        self._slots: dict[str, _RequestSlot] = {}
        self._responses: dict[str, PendingResponse] = {}
        self._message_to_request: dict[str, str] = {}
        self._terminals: dict[str, TerminalBinding] = {}
        self._event_sink: Optional[EventSink] = None

    def set_event_sink(self, sink: Optional[EventSink]) -> None:
        self._event_sink = sink

    # Lifecycle

    def restore(self, *, retention_ms: Optional[int] = None) -> RestoreSummary:
        """Load persisted state and re-arm timers for outstanding asks.

        Restart policy for asks that still wait for an answer:
        - delivered, deadline in the future: re-armed for the remaining time;
        - delivered, deadline passed or unknown: re-armed for the restart
          grace window, then times out like any other ask;
        - never delivered: resolved to ``error``.
        """
        self.shutdown()
        snapshot = self._store.load()
        self._slots = {
            request_id: _RequestSlot(request=request)
            for request_id, request in snapshot.requests.items()
        }
        self._responses = dict(snapshot.responses)
        self._message_to_request = dict(snapshot.message_to_request)
        self._terminals = dict(snapshot.terminals)

        pruned = self.prune(retention_ms) if retention_ms else 0

        now = self._clock()
        rearmed = grace_rearmed = errored = 0
        requests_dirty = False
        for request_id, slot in list(self._slots.items()):
            request = slot.request
            if not request.waits_for_answer or self.is_terminal(request_id):
                continue
            if request_id not in self._responses:
                self._responses[request_id] = PendingResponse(request_id=request_id)
                requests_dirty = True
            if request.external_message_ref is None:
                self._responses[request_id] = PendingResponse(
                    request_id=request_id,
                    status=ResponseStatus.ERROR,
                    error_detail=RESTART_UNDELIVERED_DETAIL,
                )
                requests_dirty = True
                errored += 1
                continue
            if request.deadline_at is not None and request.deadline_at > now:
                self._arm_timer(slot, request.deadline_at - now)
                rearmed += 1
                continue
            grace_ms = self._timeouts.restart_grace_ms
            slot.request = request.with_deadline(now + grace_ms)
            self._arm_timer(slot, grace_ms)
            requests_dirty = True
            grace_rearmed += 1

        if requests_dirty:
            self._save_requests()

        summary = RestoreSummary(
            loaded=len(snapshot.requests),
            rearmed=rearmed,
            grace_rearmed=grace_rearmed,
            errored=errored,
            pruned=pruned,
        )
        log_event(
            self._logger,
            logging.INFO,
            "pending.restored",
            loaded=summary.loaded,
            rearmed=summary.rearmed,
            grace_rearmed=summary.grace_rearmed,
            errored=summary.errored,
            pruned=summary.pruned,
        )
        return summary

    def shutdown(self) -> None:
        for slot in self._slots.values():
            slot.clear_timer()

    def prune(self, max_age_ms: int) -> int:
        """Drop settled entries older than ``max_age_ms``.

        Settled means a terminal response, or a fire-and-forget send. Index
        and terminal entries that point at unknown requests are dropped as
        well.
        """
        cutoff = self._clock() - max_age_ms
        stale = [
            request_id
            for request_id, slot in self._slots.items()
            if slot.request.created_at < cutoff
            and (
                self.is_terminal(request_id)
                or slot.request.kind is RequestKind.SEND
            )
        ]
        for request_id in stale:
            self._drop(request_id)
        orphan_refs = [
            ref
            for ref, request_id in self._message_to_request.items()
            if request_id not in self._slots
        ]
        for ref in orphan_refs:
            del self._message_to_request[ref]
        orphan_terminals = [
            request_id for request_id in self._terminals if request_id not in self._slots
        ]
        for request_id in orphan_terminals:
            del self._terminals[request_id]
        orphan_responses = [
            request_id for request_id in self._responses if request_id not in self._slots
        ]
        for request_id in orphan_responses:
            del self._responses[request_id]
        if stale or orphan_responses:
            self._save_requests()
        if stale or orphan_refs or orphan_terminals:
            self._save_sessions()
        if stale:
            log_event(
                self._logger,
                logging.INFO,
                "pending.pruned",
                count=len(stale),
            )
        return len(stale)

    # Mutations

    def create_request(
        self,
        kind: RequestKind,
        message: str,
        origin: OriginInfo,
        *,
        options: Optional[Iterable[str]] = None,
        timeout_ms: Optional[int] = None,
        no_wait: bool = False,
    ) -> PendingRequest:
        request_id = self._id_factory()
        while request_id in self._slots:
            request_id = self._id_factory()
        created_at = self._clock()
        request = PendingRequest(
            id=request_id,
            kind=kind,
            message=message,
            origin=origin,
            created_at=created_at,
            timeout_ms=self._timeouts.effective(timeout_ms),
            no_wait=no_wait,
            options=tuple(options or ()) if kind is RequestKind.ASK else (),
        )
        self._slots[request_id] = _RequestSlot(request=request)
        self._responses[request_id] = PendingResponse(request_id=request_id)
        self._save_requests()

        self._terminals[request_id] = TerminalBinding.from_origin(
            origin, created_at=created_at
        )
        self._save_sessions()

        log_event(
            self._logger,
            logging.INFO,
            "pending.created",
            request_id=request_id,
            kind=kind.value,
            timeout_ms=request.timeout_ms,
            no_wait=no_wait,
            option_count=len(request.options),
        )
        return request

    def attach_external_ref(
        self, request_id: str, ref: str, *, channel_ref: Optional[str] = None
    ) -> Optional[PendingRequest]:
        slot = self._slots.get(request_id)
        if slot is None:
            log_event(
                self._logger,
                logging.WARNING,
                "pending.attach.unknown_request",
                request_id=request_id,
                ref=ref,
            )
            return None
        current = slot.request.external_message_ref
        if current is not None:
            if current != ref:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "pending.attach.ref_conflict",
                    request_id=request_id,
                    current_ref=current,
                    ref=ref,
                )
            return slot.request

        request = slot.request.with_external_ref(ref, channel_ref=channel_ref)
        arm = request.waits_for_answer and not self.is_terminal(request_id)
        if arm:
            request = request.with_deadline(self._clock() + request.timeout_ms)
        slot.request = request
        self._save_requests()

        self._message_to_request[ref] = request_id
        self._save_sessions()

        if arm:
            self._arm_timer(slot, request.timeout_ms)
        log_event(
            self._logger,
            logging.INFO,
            "pending.delivered",
            request_id=request_id,
            ref=ref,
            timer_armed=arm,
        )
        return request

    def record_answer(self, request_id: str, text: str) -> bool:
        slot = self._slots.get(request_id)
        if slot is None:
            log_event(
                self._logger,
                logging.INFO,
                "pending.answer.unknown_request",
                request_id=request_id,
            )
            return False
        if self.is_terminal(request_id):
            log_event(
                self._logger,
                logging.INFO,
                "pending.answer.ignored",
                request_id=request_id,
                status=self._responses[request_id].status.value,
            )
            return False
        slot.clear_timer()
        answered_at = self._clock()
        self._responses[request_id] = PendingResponse(
            request_id=request_id,
            status=ResponseStatus.ANSWERED,
            answer_text=text,
            answered_at=answered_at,
        )
        self._save_requests()
        log_event(
            self._logger,
            logging.INFO,
            "pending.answered",
            request_id=request_id,
            answer_chars=len(text),
        )
        self._emit(
            RequestAnswered(
                request_id=request_id, answer_text=text, answered_at=answered_at
            )
        )
        return True

    def record_error(
        self, request_id: str, detail: str, *, code: str = "DELIVERY_FAILED"
    ) -> bool:
        slot = self._slots.get(request_id)
        if slot is None or self.is_terminal(request_id):
            return False
        slot.clear_timer()
        self._responses[request_id] = PendingResponse(
            request_id=request_id,
            status=ResponseStatus.ERROR,
            error_detail=detail,
        )
        self._save_requests()
        log_event(
            self._logger,
            logging.WARNING,
            "pending.errored",
            request_id=request_id,
            code=code,
            detail=detail,
        )
        self._emit(RequestErrored(request_id=request_id, detail=detail, code=code))
        return True

    def _on_timeout_fired(self, request_id: str) -> None:
        slot = self._slots.get(request_id)
        if slot is None:
            return
        slot.timer = None
        if self.is_terminal(request_id):
            return
        self._responses[request_id] = PendingResponse(
            request_id=request_id, status=ResponseStatus.TIMEOUT
        )
        self._save_requests()
        log_event(
            self._logger,
            logging.INFO,
            "pending.timed_out",
            request_id=request_id,
        )
        self._emit(RequestTimedOut(request_id=request_id))

    def mark_terminal_liveness(self, request_id: str, alive: bool) -> None:
        binding = self._terminals.get(request_id)
        if binding is None or binding.alive == alive:
            return
        self._terminals[request_id] = TerminalBinding(
            pid=binding.pid,
            cwd=binding.cwd,
            session_id=binding.session_id,
            alive=alive,
            created_at=binding.created_at,
        )
        self._save_sessions()

    def cancel(self, request_id: str) -> bool:
        existed = (
            request_id in self._slots
            or request_id in self._responses
            or request_id in self._terminals
        )
        if not existed:
            return False
        self._drop(request_id)
        self._save_requests()
        self._save_sessions()
        log_event(
            self._logger,
            logging.INFO,
            "pending.cancelled",
            request_id=request_id,
        )
        return True

    # Reads

    def lookup(self, request_id: str) -> Optional[PendingRequest]:
        slot = self._slots.get(request_id)
        return slot.request if slot is not None else None

    def lookup_by_external_ref(self, ref: str) -> Optional[PendingRequest]:
        request_id = self._message_to_request.get(ref)
        if request_id is None:
            return None
        return self.lookup(request_id)

    def response(self, request_id: str) -> Optional[PendingResponse]:
        return self._responses.get(request_id)

    def terminal_binding(self, request_id: str) -> Optional[TerminalBinding]:
        return self._terminals.get(request_id)

    def is_terminal(self, request_id: str) -> bool:
        response = self._responses.get(request_id)
        return response is not None and response.is_terminal

    def has_timer(self, request_id: str) -> bool:
        slot = self._slots.get(request_id)
        return slot is not None and slot.timer is not None

    def request_ids(self) -> list[str]:
        return list(self._slots)

    # Internals

    def _drop(self, request_id: str) -> None:
        slot = self._slots.pop(request_id, None)
        if slot is not None:
            slot.clear_timer()
            ref = slot.request.external_message_ref
            if ref is not None and self._message_to_request.get(ref) == request_id:
                del self._message_to_request[ref]
        for ref in [
            key for key, value in self._message_to_request.items() if value == request_id
        ]:
            del self._message_to_request[ref]
        self._responses.pop(request_id, None)
        self._terminals.pop(request_id, None)

    def _arm_timer(self, slot: _RequestSlot, delay_ms: int) -> None:
        slot.clear_timer()
        loop = self._loop or asyncio.get_running_loop()
        slot.timer = loop.call_later(
            max(delay_ms, 0) / 1000.0, self._on_timeout_fired, slot.request.id
        )

    def _emit(self, event: RequestEvent) -> None:
        sink = self._event_sink
        if sink is None:
            return
        try:
            sink(event)
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "pending.event_sink.failed",
                request_id=event.request_id,
                event_type=type(event).__name__,
                exc=exc,
            )

    def _save_requests(self) -> None:
        self._store.save_requests(
            {request_id: slot.request for request_id, slot in self._slots.items()},
            self._responses,
        )

    def _save_sessions(self) -> None:
        self._store.save_sessions(self._message_to_request, self._terminals)


__all__ = ["EventSink", "RequestCoordinator", "RestoreSummary"]
