from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

from ...core.logging_utils import log_event
from ...core.pending.coordinator import RequestCoordinator
from ...core.pending.models import RequestKind
from ...core.process_utils import pid_is_running
from .components import parse_option_custom_id
from .errors import DiscordError
from .interactions import (
    extract_component_custom_id,
    extract_guild_id,
    extract_interaction_id,
    extract_interaction_token,
    extract_message_author,
    extract_message_embed,
    extract_referenced_message_embed,
    extract_referenced_message_id,
    extract_user_id,
    is_component_interaction,
)
from .notifier import DiscordNotifier


class SessionRecovery(Protocol):
    async def attempt_resume(self, session_id: str, cwd: str, text: str) -> bool: ...


class ReplyRouter:
    """Maps gateway events onto ``record_answer`` calls.

    Text replies resolve through the message index; button clicks carry the
    request id and option index in their ``custom_id``.
    """

    def __init__(
        self,
        coordinator: RequestCoordinator,
        notifier: DiscordNotifier,
        *,
        user_id: str,
        recovery: Optional[SessionRecovery] = None,
        pid_alive: Callable[[int], bool] = pid_is_running,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._coordinator = coordinator
        self._notifier = notifier
        self._user_id = user_id
        self._recovery = recovery
        self._pid_alive = pid_alive
        self._logger = logger or logging.getLogger(__name__)
        self._background: set[asyncio.Task[Any]] = set()

    async def on_dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            if event_type == "MESSAGE_CREATE":
                await self._on_message(payload)
            elif event_type == "INTERACTION_CREATE":
                await self._on_interaction(payload)
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "discord.dispatch.failed",
                event_type=event_type,
                exc=exc,
            )

    async def aclose(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    async def wait_background(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _on_message(self, payload: dict[str, Any]) -> None:
        author_id, is_bot = extract_message_author(payload)
        if is_bot or extract_guild_id(payload) is not None:
            return
        if author_id != self._user_id:
            return
        ref = extract_referenced_message_id(payload)
        if ref is None:
            return
        request = self._coordinator.lookup_by_external_ref(ref)
        if request is None:
            log_event(
                self._logger,
                logging.DEBUG,
                "discord.reply.unknown_ref",
                ref=ref,
            )
            return
        content = payload.get("content")
        if not isinstance(content, str) or not content.strip():
            log_event(
                self._logger,
                logging.INFO,
                "discord.reply.empty",
                request_id=request.id,
            )
            return
        log_event(
            self._logger,
            logging.INFO,
            "discord.reply.received",
            request_id=request.id,
            chars=len(content),
        )
        if not self._finalize(request.id, content) or request.kind is not RequestKind.ASK:
            return
        try:
            await self._notifier.mark_reply_answered(
                request,
                answer_text=content,
                original_embed=extract_referenced_message_embed(payload),
            )
        except DiscordError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "discord.reply.update_failed",
                request_id=request.id,
                exc=exc,
            )

    async def _on_interaction(self, payload: dict[str, Any]) -> None:
        if not is_component_interaction(payload):
            return
        parsed = parse_option_custom_id(extract_component_custom_id(payload))
        if parsed is None:
            return
        if extract_user_id(payload) != self._user_id:
            return
        request_id, index = parsed
        request = self._coordinator.lookup(request_id)
        if request is None or not request.options:
            return
        if index >= len(request.options):
            log_event(
                self._logger,
                logging.INFO,
                "discord.button.out_of_range",
                request_id=request_id,
                index=index,
            )
            return
        interaction_id = extract_interaction_id(payload)
        interaction_token = extract_interaction_token(payload)
        if interaction_id is None or interaction_token is None:
            return
        label = request.options[index]

        if self._coordinator.is_terminal(request_id):
            try:
                await self._notifier.reply_already_resolved(
                    interaction_id=interaction_id,
                    interaction_token=interaction_token,
                )
            except DiscordError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "discord.button.resolved_reply_failed",
                    request_id=request_id,
                    exc=exc,
                )
            return

        try:
            await self._notifier.mark_answered(
                interaction_id=interaction_id,
                interaction_token=interaction_token,
                original_embed=extract_message_embed(payload),
                answer_label=label,
            )
        except DiscordError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "discord.button.update_failed",
                request_id=request_id,
                exc=exc,
            )
        log_event(
            self._logger,
            logging.INFO,
            "discord.button.clicked",
            request_id=request_id,
            index=index,
        )
        self._finalize(request_id, label)

    def _finalize(self, request_id: str, text: str) -> bool:
        binding = self._coordinator.terminal_binding(request_id)
        if binding is not None and not self._pid_alive(binding.pid):
            self._coordinator.mark_terminal_liveness(request_id, False)
            if binding.session_id and self._recovery is not None:
                log_event(
                    self._logger,
                    logging.INFO,
                    "recovery.scheduled",
                    request_id=request_id,
                    pid=binding.pid,
                    session_id=binding.session_id,
                )
                task = asyncio.create_task(
                    self._recovery.attempt_resume(binding.session_id, binding.cwd, text)
                )
                self._background.add(task)
                task.add_done_callback(self._background.discard)
            else:
                log_event(
                    self._logger,
                    logging.INFO,
                    "recovery.skipped",
                    request_id=request_id,
                    pid=binding.pid,
                    reason="no_session_id" if not binding.session_id else "disabled",
                )
        return self._coordinator.record_answer(request_id, text)
