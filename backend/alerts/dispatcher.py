"""
Notification Dispatcher — candidates in, deduplicated notifications out.

Per candidate:
  1. Conditional insert keyed on (recipient, dedup_key, cooldown window)
  2. Suppressed → counted, not an error
  3. Persisted → realtime push, and email escalation when CRITICAL

Each candidate commits on its own, so a store failure on one candidate
never loses the ones already persisted. Push and email run as background
deliveries after the commit: they can neither block nor roll back the
in-app notification.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.email import EmailTransport, send_alert_email
from alerts.fanout import NotificationFanout
from alerts.recipients import Recipient
from alerts.rules import AlertCandidate, Severity
from db.models import Notification
from db.store import insert_notification_if_absent

logger = structlog.get_logger()


@dataclass
class DispatchResult:
    created: int = 0
    suppressed: int = 0
    failed: int = 0
    escalated: int = 0
    notifications: list[Notification] = field(default_factory=list)

    def as_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "suppressed": self.suppressed,
            "failed": self.failed,
            "escalated": self.escalated,
        }


class NotificationDispatcher:
    def __init__(
        self,
        fanout: NotificationFanout,
        email_transport: EmailTransport,
        cooldown_hours: float = 24.0,
        escalate_critical: bool = True,
    ):
        self.fanout = fanout
        self.email_transport = email_transport
        self.cooldown_hours = cooldown_hours
        self.escalate_critical = escalate_critical
        self._pending: set[asyncio.Task] = set()

    async def dispatch(
        self,
        db: AsyncSession,
        candidates: list[AlertCandidate],
        recipient: Recipient,
        now: datetime | None = None,
        result: DispatchResult | None = None,
    ) -> DispatchResult:
        """
        Persist one notification per non-suppressed candidate, all addressed
        to `recipient`. Pass `result` to observe progress if the caller may
        cancel mid-pass.
        """
        result = result if result is not None else DispatchResult()

        for candidate in candidates:
            try:
                notification = await insert_notification_if_absent(
                    db,
                    recipient_id=recipient.user_id,
                    dedup_key=candidate.dedup_key,
                    severity=candidate.severity.value,
                    title=candidate.title,
                    message=candidate.summary,
                    category=candidate.category,
                    rule_kind=candidate.rule_kind.value,
                    subject_id=candidate.subject_id,
                    payload={"severity": candidate.severity.value, **candidate.facts},
                    cooldown_hours=self.cooldown_hours,
                    now=now,
                )
            except SQLAlchemyError as exc:
                await db.rollback()
                result.failed += 1
                logger.error(
                    "dispatch.persist_failed",
                    rule_kind=candidate.rule_kind.value,
                    subject_id=candidate.subject_id,
                    error=str(exc),
                )
                continue

            if notification is None:
                result.suppressed += 1
                logger.debug(
                    "dispatch.suppressed",
                    rule_kind=candidate.rule_kind.value,
                    subject_id=candidate.subject_id,
                    recipient_id=str(recipient.user_id),
                )
                continue

            result.created += 1
            result.notifications.append(notification)
            self._deliver(notification, recipient, candidate.severity, result)

        return result

    def _deliver(self, notification: Notification, recipient: Recipient, severity: Severity, result: DispatchResult) -> None:
        self._spawn(self.fanout.publish(notification))
        if self.escalate_critical and severity == Severity.CRITICAL:
            result.escalated += 1
            self._spawn(
                send_alert_email(
                    self.email_transport,
                    recipient.email,
                    notification,
                    recipient_name=recipient.full_name or "",
                )
            )

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("dispatch.delivery_failed", error=str(task.exception()))

    @property
    def pending_deliveries(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: float | None = 30.0) -> None:
        """Wait for outstanding push/email deliveries. Stragglers past `timeout` are cancelled."""
        if not self._pending:
            return
        pending = list(self._pending)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning("dispatch.drain_timeout", cancelled=len(not_done))
