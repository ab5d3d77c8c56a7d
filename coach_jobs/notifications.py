"""
Push notifications with an email fallback.

Pushes go through the Retrier; when the owner has no active push
subscription, or every push attempt failed, the email fallback is used
instead. Transport errors never escape: callers get a DeliveryResult.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional, Protocol

from .retry import Retrier

if TYPE_CHECKING:
    from .store import Store

logger = logging.getLogger(__name__)

PLAN_READY_MESSAGE = "Your new meal and workout plans are ready!"
REMINDER_MESSAGE = "Time for your check-in! Track your progress today 💪"

PLAN_READY_TEMPLATE = "plan_ready"
REMINDER_TEMPLATE = "reminder"


class Notifier(Protocol):
    async def send_push(self, subscriber_id: str, message: str) -> None: ...

    async def send_email_fallback(self, owner_id: str, template: str) -> None: ...


class Channel(Enum):
    PUSH = "push"
    EMAIL = "email"


@dataclass(frozen=True)
class DeliveryResult:
    channel: Channel
    ok: bool
    attempts: int
    error: Optional[str] = None


class NotificationService:
    def __init__(self, notifier: Notifier, store: 'Store', retrier: Optional[Retrier] = None):
        self.notifier = notifier
        self.store = store
        self.retrier = retrier or Retrier()

    async def notify_plan_ready(self, owner_id: str) -> DeliveryResult:
        return await self._deliver(owner_id, PLAN_READY_MESSAGE, PLAN_READY_TEMPLATE)

    async def send_reminder(self, owner_id: str) -> DeliveryResult:
        return await self._deliver(owner_id, REMINDER_MESSAGE, REMINDER_TEMPLATE)

    async def _deliver(self, owner_id: str, message: str, template: str) -> DeliveryResult:
        subscriber_id = await self.store.read_push_subscription(owner_id)

        if subscriber_id:
            result = await self.retrier.run(self.notifier.send_push, subscriber_id, message)
            if result.ok:
                logger.debug(f"Push '{template}' delivered to {owner_id} after {result.attempts} attempt(s)")
                return DeliveryResult(Channel.PUSH, True, result.attempts)
            logger.warning(f"Push '{template}' to {owner_id} failed after {result.attempts} attempts, "
                           f"falling back to email: {result.last_error}")
        else:
            logger.debug(f"No active push subscription for {owner_id}, sending '{template}' by email")

        return await self._send_email(owner_id, template)

    async def _send_email(self, owner_id: str, template: str) -> DeliveryResult:
        try:
            await self.notifier.send_email_fallback(owner_id, template)
        except Exception as e:
            logger.error(f"Email fallback '{template}' to {owner_id} failed: {e}")
            return DeliveryResult(Channel.EMAIL, False, 1, str(e))
        return DeliveryResult(Channel.EMAIL, True, 1)
