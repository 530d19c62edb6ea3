"""
Tests for the Notification Dispatcher.

Covers:
  - One notification per candidate, addressed to one recipient
  - Cooldown suppression on re-run
  - Critical escalation by email, and email failures staying isolated
  - Realtime push after persistence
  - Store failures counted per candidate
"""

import asyncio
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from alerts.dispatcher import NotificationDispatcher
from alerts.email import EmailResult, EmailTransport
from alerts.recipients import Recipient
from alerts.rules import HealthCheckFacts, RuleKind, Severity, StockFact, evaluate
from db.models import Notification

T0 = datetime(2026, 3, 1, 9, 0, 0)

RECIPIENT = Recipient(
    user_id=uuid.UUID("00000000-0000-0000-0000-000000000001"),
    email="admin@stocksentry.app",
    role="admin",
    full_name="Ada Admin",
)


class FailingTransport(EmailTransport):
    def __init__(self):
        self.attempts = 0

    async def send(self, to: str, subject: str, html_body: str) -> EmailResult:
        self.attempts += 1
        raise TimeoutError("provider timed out")


def _candidates(*stock: StockFact):
    return evaluate(HealthCheckFacts(stock=list(stock)))


async def _count(db) -> int:
    return (await db.execute(select(func.count()).select_from(Notification))).scalar()


@pytest.mark.asyncio
class TestDispatch:
    async def test_low_stock_creates_one_notification(self, test_db, dispatcher, email_transport):
        candidates = _candidates(StockFact(subject_id="p-1", current_quantity=30, reorder_threshold=80, name="Amoxicillin"))

        result = await dispatcher.dispatch(test_db, candidates, RECIPIENT, now=T0)
        await dispatcher.drain()

        assert result.created == 1
        assert result.suppressed == 0
        notification = result.notifications[0]
        assert notification.rule_kind == RuleKind.LOW_STOCK.value
        assert notification.severity == Severity.HIGH.value
        assert notification.recipient_id == RECIPIENT.user_id
        assert notification.payload["stock_ratio"] == 0.375
        assert await _count(test_db) == 1
        # HIGH is not escalated
        assert email_transport.sent == []

    async def test_rerun_within_cooldown_is_suppressed(self, test_db, dispatcher):
        candidates = _candidates(StockFact(subject_id="p-1", current_quantity=30, reorder_threshold=80))

        first = await dispatcher.dispatch(test_db, candidates, RECIPIENT, now=T0)
        second = await dispatcher.dispatch(test_db, candidates, RECIPIENT, now=T0 + timedelta(minutes=1))

        assert (first.created, first.suppressed) == (1, 0)
        assert (second.created, second.suppressed) == (0, 1)
        assert await _count(test_db) == 1

    async def test_severity_change_does_not_bypass_cooldown(self, test_db, dispatcher):
        await dispatcher.dispatch(
            test_db, _candidates(StockFact(subject_id="p-1", current_quantity=60, reorder_threshold=80)), RECIPIENT, now=T0
        )

        result = await dispatcher.dispatch(
            test_db,
            _candidates(StockFact(subject_id="p-1", current_quantity=10, reorder_threshold=80)),
            RECIPIENT,
            now=T0 + timedelta(hours=1),
        )

        assert result.suppressed == 1

    async def test_out_of_stock_escalates_by_email(self, test_db, dispatcher, email_transport):
        candidates = _candidates(StockFact(subject_id="p-2", current_quantity=0, reorder_threshold=20, name="Insulin Pen"))

        result = await dispatcher.dispatch(test_db, candidates, RECIPIENT, now=T0)
        await dispatcher.drain()

        assert result.created == 1
        assert result.escalated == 1
        assert result.notifications[0].severity == "critical"
        assert len(email_transport.sent) == 1
        assert email_transport.sent[0]["to"] == RECIPIENT.email
        assert "Insulin Pen" in email_transport.sent[0]["html_body"]

    async def test_email_failure_does_not_change_result(self, test_db, fanout):
        transport = FailingTransport()
        dispatcher = NotificationDispatcher(fanout=fanout, email_transport=transport, cooldown_hours=24)
        candidates = _candidates(StockFact(subject_id="p-2", current_quantity=0, reorder_threshold=20))

        result = await dispatcher.dispatch(test_db, candidates, RECIPIENT, now=T0)
        await dispatcher.drain()

        assert transport.attempts == 1
        assert result.created == 1
        assert result.failed == 0
        assert await _count(test_db) == 1

    async def test_escalation_can_be_disabled(self, test_db, fanout, email_transport):
        dispatcher = NotificationDispatcher(
            fanout=fanout, email_transport=email_transport, cooldown_hours=24, escalate_critical=False
        )
        candidates = _candidates(StockFact(subject_id="p-2", current_quantity=0, reorder_threshold=20))

        result = await dispatcher.dispatch(test_db, candidates, RECIPIENT, now=T0)
        await dispatcher.drain()

        assert result.escalated == 0
        assert email_transport.sent == []

    async def test_publishes_to_live_subscriber(self, test_db, dispatcher, fanout):
        received = []
        subscription = await fanout.subscribe(RECIPIENT.user_id, received.append)

        result = await dispatcher.dispatch(
            test_db, _candidates(StockFact(subject_id="p-1", current_quantity=30, reorder_threshold=80)), RECIPIENT, now=T0
        )
        await dispatcher.drain()
        for _ in range(10):
            if received:
                break
            await asyncio.sleep(0.01)
        await subscription.close()

        assert len(received) == 1
        assert received[0]["type"] == "notification"
        assert received[0]["payload"]["notification_id"] == str(result.notifications[0].notification_id)

    async def test_store_failure_counts_and_continues(self, test_db, dispatcher, monkeypatch):
        from db import store

        real_insert = store.insert_notification_if_absent
        calls = {"n": 0}

        async def flaky_insert(db, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("INSERT INTO notifications", {}, Exception("disk I/O error"))
            return await real_insert(db, **kwargs)

        monkeypatch.setattr("alerts.dispatcher.insert_notification_if_absent", flaky_insert)
        candidates = _candidates(
            StockFact(subject_id="p-1", current_quantity=0, reorder_threshold=20),
            StockFact(subject_id="p-2", current_quantity=30, reorder_threshold=80),
        )

        result = await dispatcher.dispatch(test_db, candidates, RECIPIENT, now=T0)
        await dispatcher.drain()

        assert result.failed == 1
        assert result.created == 1
        assert await _count(test_db) == 1

    async def test_no_candidates(self, test_db, dispatcher):
        result = await dispatcher.dispatch(test_db, [], RECIPIENT, now=T0)
        assert result.as_dict() == {"created": 0, "suppressed": 0, "failed": 0, "escalated": 0}
