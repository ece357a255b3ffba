from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .pending.models import PendingRequest


@dataclass(frozen=True)
class DeliveredMessage:
    message_id: str
    channel_id: str


class RequestNotifier(Protocol):
    """Outbound channel for requests. Raises ``DeliveryError`` on failure."""

    async def deliver(self, request: PendingRequest) -> DeliveredMessage: ...


__all__ = ["DeliveredMessage", "RequestNotifier"]
