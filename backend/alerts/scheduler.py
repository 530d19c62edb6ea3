"""
Health-Check Scheduler — decides *when* a rule evaluation pass runs.

Every trigger (Celery beat, the API's manual trigger, a UI session) calls
the same entry point, maybe_run_health_check(). Nothing else owns a timer
for a check kind.

Two debounce layers, checked in order:
  1. Local: process-memory check_kind -> last run. Cheap, best-effort,
     lost on restart. Still guards the pass when the store is unreachable.
  2. Persistent: claim_health_check_run(), an atomic conditional insert
     that admits at most one run per interval across all processes.

Beat polls more often than the interval, so both layers refuse a run only
within claim_window(): the interval minus a small tick tolerance. A tick
that starts a little sooner after the last run than the one before it
still runs instead of slipping a whole interval.

Once admitted, the pass always ends with a recorded HealthCheckRun, even
on error or timeout, so a failing rule backs off for a full interval.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts.dispatcher import DispatchResult, NotificationDispatcher
from alerts.email import EmailTransport, get_email_transport
from alerts.facts import FactSource, SqlFactSource, gather_facts
from alerts.fanout import NotificationFanout, get_fanout
from alerts.recipients import RecipientDirectory, SqlRecipientDirectory, resolve_recipient
from alerts.rules import evaluate
from core.config import Settings, get_settings
from db.models import utcnow
from db.store import claim_health_check_run, count_health_check_runs, record_health_check_run

logger = structlog.get_logger()

# check_kind -> (include stock rules, include expiry rules)
CHECK_KIND_RULES = {
    "all": (True, True),
    "stock": (True, False),
    "expiry": (False, True),
}
_STORE_ERRORS = (SQLAlchemyError, OSError)


class NoEligibleRecipientError(LookupError):
    pass


class LocalDebounce:
    """Process-memory check_kind -> last accepted run time."""

    def __init__(self):
        self._last_run: dict[str, datetime] = {}

    def get(self, check_kind: str) -> datetime | None:
        return self._last_run.get(check_kind)

    def blocks(self, check_kind: str, now: datetime, window: timedelta) -> bool:
        last = self._last_run.get(check_kind)
        return last is not None and now - last < window

    def mark(self, check_kind: str, when: datetime | None) -> None:
        if when is None:
            self._last_run.pop(check_kind, None)
        else:
            self._last_run[check_kind] = when

    def clear(self) -> None:
        self._last_run.clear()


_process_debounce = LocalDebounce()


@dataclass
class HealthCheckOutcome:
    check_kind: str
    ran: bool
    reason: str | None = None
    run_id: str | None = None
    recipient_id: str | None = None
    notifications_created: int = 0
    notifications_suppressed: int = 0
    notifications_failed: int = 0
    error: str | None = None
    forced: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "check_kind": self.check_kind,
            "ran": self.ran,
            "reason": self.reason,
            "run_id": self.run_id,
            "recipient_id": self.recipient_id,
            "notifications_created": self.notifications_created,
            "notifications_suppressed": self.notifications_suppressed,
            "notifications_failed": self.notifications_failed,
            "error": self.error,
            "forced": self.forced,
        }


class HealthCheckScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: NotificationDispatcher,
        *,
        interval_minutes: float = 15,
        expiry_window_days: int = 30,
        timeout_seconds: float = 120.0,
        tick_tolerance_seconds: float = 30.0,
        recipient_roles: list[str] | None = None,
        recipient_policy: str = "lowest_id",
        fact_source_factory: Callable[[AsyncSession], FactSource] = SqlFactSource,
        directory_factory: Callable[[AsyncSession], RecipientDirectory] = SqlRecipientDirectory,
        debounce: LocalDebounce | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.interval_minutes = interval_minutes
        self.expiry_window_days = expiry_window_days
        self.timeout_seconds = timeout_seconds
        self.tick_tolerance_seconds = tick_tolerance_seconds
        self.recipient_roles = recipient_roles or ["admin"]
        self.recipient_policy = recipient_policy
        self.fact_source_factory = fact_source_factory
        self.directory_factory = directory_factory
        self.debounce = debounce if debounce is not None else _process_debounce
        self.clock = clock

    def claim_window(self, interval_minutes: float | None = None) -> timedelta:
        """
        How long after an accepted run the next one is refused. A timer tick that
        lands slightly early relative to the previous start still counts as due.
        """
        interval = interval_minutes if interval_minutes is not None else self.interval_minutes
        window = timedelta(minutes=interval) - timedelta(seconds=self.tick_tolerance_seconds)
        return max(window, timedelta(0))

    async def maybe_run_health_check(
        self,
        check_kind: str = "all",
        interval_minutes: float | None = None,
        force: bool = False,
    ) -> bool:
        """Run a pass if this check kind is due. Returns whether a pass ran. Never raises for store or fact failures."""
        outcome = await self.run(check_kind, interval_minutes=interval_minutes, force=force)
        return outcome.ran

    async def run(
        self,
        check_kind: str = "all",
        interval_minutes: float | None = None,
        force: bool = False,
    ) -> HealthCheckOutcome:
        if check_kind not in CHECK_KIND_RULES:
            raise ValueError(f"Unknown check kind '{check_kind}'. Expected one of: {', '.join(CHECK_KIND_RULES)}")

        window = self.claim_window(interval_minutes)
        now = self.clock()
        log = logger.bind(check_kind=check_kind, forced=force)

        if not force and self.debounce.blocks(check_kind, now, window):
            log.debug("health_check.skipped", reason="local_debounce", last_run=str(self.debounce.get(check_kind)))
            return HealthCheckOutcome(check_kind=check_kind, ran=False, reason="local_debounce")

        previous_local = self.debounce.get(check_kind)
        self.debounce.mark(check_kind, now)

        run_id = None
        try:
            async with self.session_factory() as db:
                run = await claim_health_check_run(
                    db, check_kind, 0 if force else window.total_seconds() / 60, now=now
                )
        except _STORE_ERRORS as exc:
            log.warning("health_check.claim_unavailable", error=str(exc))
        else:
            if run is None:
                self.debounce.mark(check_kind, previous_local)
                log.debug("health_check.skipped", reason="recently_run")
                return HealthCheckOutcome(check_kind=check_kind, ran=False, reason="recently_run", forced=force)
            run_id = run.run_id

        log.info("health_check.started", run_id=str(run_id) if run_id else None)
        result = DispatchResult()
        recipient = None
        error = None
        try:
            recipient = await asyncio.wait_for(
                self._run_pass(check_kind, now, result),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = f"Health check exceeded its {self.timeout_seconds:g}s time budget"
        except Exception as exc:  # noqa: BLE001
            error = f"{type(exc).__name__}: {exc}"

        if error:
            log.error("health_check.failed", run_id=str(run_id) if run_id else None, error=error, **result.as_dict())

        try:
            async with self.session_factory() as db:
                recorded = await record_health_check_run(
                    db,
                    check_kind,
                    result.created,
                    error,
                    run_id=run_id,
                    notifications_suppressed=result.suppressed,
                    now=self.clock(),
                )
                run_id = recorded.run_id
        except _STORE_ERRORS as exc:
            log.error("health_check.record_failed", error=str(exc))

        outcome = HealthCheckOutcome(
            check_kind=check_kind,
            ran=True,
            run_id=str(run_id) if run_id else None,
            recipient_id=str(recipient.user_id) if recipient else None,
            notifications_created=result.created,
            notifications_suppressed=result.suppressed,
            notifications_failed=result.failed,
            error=error,
            forced=force,
        )
        if not error:
            log.info("health_check.completed", **outcome.as_dict())
        return outcome

    async def _run_pass(self, check_kind: str, now: datetime, result: DispatchResult):
        include_stock, include_expiry = CHECK_KIND_RULES[check_kind]

        async with self.session_factory() as db:
            facts = await gather_facts(
                self.fact_source_factory(db),
                include_stock=include_stock,
                include_expiry=include_expiry,
                expiry_window_days=self.expiry_window_days,
            )
            candidates = evaluate(facts, expiry_window_days=self.expiry_window_days)
            if not candidates:
                return None

            rotation = 0
            if self.recipient_policy == "round_robin":
                rotation = await count_health_check_runs(db, check_kind)
            recipient = await resolve_recipient(
                self.directory_factory(db),
                self.recipient_roles,
                policy=self.recipient_policy,
                rotation=rotation,
            )
            if recipient is None:
                raise NoEligibleRecipientError(
                    f"No active recipient with role in {self.recipient_roles} for {len(candidates)} alert(s)"
                )

            await self.dispatcher.dispatch(db, candidates, recipient, now=now, result=result)
        return recipient


def build_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    fanout: NotificationFanout,
    email_transport: EmailTransport | None = None,
    settings: Settings | None = None,
    debounce: LocalDebounce | None = None,
) -> HealthCheckScheduler:
    settings = settings or get_settings()
    dispatcher = NotificationDispatcher(
        fanout=fanout,
        email_transport=email_transport or get_email_transport(settings),
        cooldown_hours=settings.dedup_cooldown_hours,
        escalate_critical=settings.email_escalation_enabled,
    )
    return HealthCheckScheduler(
        session_factory,
        dispatcher,
        interval_minutes=settings.health_check_interval_minutes,
        expiry_window_days=settings.expiry_window_days,
        timeout_seconds=settings.health_check_timeout_seconds,
        tick_tolerance_seconds=settings.health_check_tick_tolerance_seconds,
        recipient_roles=list(settings.alert_recipient_roles),
        recipient_policy=settings.recipient_selection_policy,
        debounce=debounce,
    )


@lru_cache
def get_scheduler() -> HealthCheckScheduler:
    """The single logical scheduler for this process, bound to the app's session factory."""
    from db.session import AsyncSessionLocal

    return build_scheduler(AsyncSessionLocal, fanout=get_fanout())
