"""
Deduplication + Notification Store

Single source of truth for "should this fire again" decisions.

Every mutation that guards an invariant is one conditional statement:

    INSERT INTO <table> (...) SELECT <values> WHERE NOT EXISTS (<recent row>)

executed under a per-key transaction lock on PostgreSQL
(pg_try_advisory_xact_lock) and under SQLite's single-writer lock
elsewhere. A writer that loses the lock race is treated exactly like a
writer that found a recent row: nothing is inserted and None is returned.

Read-only helpers (should_send_notification, should_run_health_check)
answer the same questions without writing, for diagnostics and the API.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import Select, delete, func, insert, literal, or_, select, text, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import HealthCheckRun, Notification, utcnow

logger = structlog.get_logger()


class PolicyViolationError(ValueError):
    """A mutation the alerting rules forbid. Carries a human-readable reason."""


# ──────────────────────────────────────────────────────────────────────────
# Locking helpers
# ──────────────────────────────────────────────────────────────────────────


def _dialect_name(db: AsyncSession) -> str:
    return db.get_bind().dialect.name


async def _try_lock(db: AsyncSession, *parts: str) -> bool:
    """Take a transaction-scoped lock on a logical key. False if another writer holds it."""
    if _dialect_name(db) != "postgresql":
        return True
    result = await db.execute(
        text("SELECT pg_try_advisory_xact_lock(hashtext(:lock_key))"),
        {"lock_key": ":".join(parts)},
    )
    return bool(result.scalar())


def _is_lock_contention(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "sqlstate", None) == "55P03" or getattr(orig, "pgcode", None) == "55P03":
        return True
    return "database is locked" in str(orig or exc).lower()


async def _insert_unless(db: AsyncSession, model, values: dict[str, Any], conflict: Select) -> bool:
    """Insert `values` into `model` unless `conflict` matches any row. Single statement."""
    columns = model.__table__.c
    source = select(*[literal(value, type_=columns[name].type).label(name) for name, value in values.items()]).where(
        ~conflict.correlate(None).exists()
    )
    result = await db.execute(insert(model).from_select(list(values), source))
    return (result.rowcount or 0) > 0


# ──────────────────────────────────────────────────────────────────────────
# Notification deduplication
# ──────────────────────────────────────────────────────────────────────────


def _recent_notification_query(recipient_id, dedup_key: str, cutoff: datetime) -> Select:
    return select(Notification.notification_id).where(
        Notification.recipient_id == recipient_id,
        Notification.dedup_key == dedup_key,
        Notification.dismissed_at.is_(None),
        Notification.created_at > cutoff,
    )


async def should_send_notification(
    db: AsyncSession,
    recipient_id,
    dedup_key: str,
    cooldown_hours: float,
    now: datetime | None = None,
) -> bool:
    """
    True iff no non-dismissed notification with (recipient_id, dedup_key)
    was created within the last `cooldown_hours`.

    Advisory only. Use insert_notification_if_absent to act on the answer.
    """
    now = now or utcnow()
    cutoff = now - timedelta(hours=cooldown_hours)
    query = _recent_notification_query(recipient_id, dedup_key, cutoff).limit(1)
    result = await db.execute(query)
    return result.first() is None


async def insert_notification_if_absent(
    db: AsyncSession,
    *,
    recipient_id,
    dedup_key: str,
    severity: str,
    title: str,
    message: str,
    category: str = "inventory",
    rule_kind: str | None = None,
    subject_id: str | None = None,
    payload: dict[str, Any] | None = None,
    cooldown_hours: float,
    now: datetime | None = None,
) -> Notification | None:
    """
    Atomically persist a notification unless an equivalent one is still
    inside its cooldown window for the same recipient.

    Commits on success. Returns the new Notification, or None when suppressed.
    """
    now = now or utcnow()
    cutoff = now - timedelta(hours=cooldown_hours)
    recipient_key = str(recipient_id)

    try:
        if not await _try_lock(db, "notification", recipient_key, dedup_key):
            await db.rollback()
            return None

        notification_id = uuid.uuid4()
        values = {
            "notification_id": notification_id,
            "recipient_id": recipient_id,
            "dedup_key": dedup_key,
            "rule_kind": rule_kind,
            "subject_id": subject_id,
            "category": category,
            "severity": severity,
            "title": title[:200],
            "message": message,
            "payload": payload or {},
            "is_read": False,
            "created_at": now,
        }
        inserted = await _insert_unless(
            db,
            Notification,
            values,
            _recent_notification_query(recipient_id, dedup_key, cutoff),
        )
    except OperationalError as exc:
        if not _is_lock_contention(exc):
            raise
        await db.rollback()
        logger.debug("store.notification_lock_contention", recipient_id=recipient_key, dedup_key=dedup_key)
        return None

    await db.commit()
    if not inserted:
        return None
    return await db.get(Notification, notification_id)


async def reset_notification_cooldown(db: AsyncSession, recipient_id, dedup_key: str, now: datetime | None = None) -> int:
    """
    Make (recipient_id, dedup_key) eligible to fire again by dismissing every
    open notification for it. Returns the number of rows dismissed.
    """
    now = now or utcnow()
    result = await db.execute(
        update(Notification)
        .where(
            Notification.recipient_id == recipient_id,
            Notification.dedup_key == dedup_key,
            Notification.dismissed_at.is_(None),
        )
        .values(dismissed_at=now)
    )
    await db.commit()
    return result.rowcount or 0


@dataclass
class DedupKeyStats:
    recipient_id: uuid.UUID
    dedup_key: str
    rule_kind: str | None
    subject_id: str | None
    total_sent: int
    last_sent: datetime
    hours_until_next: float


async def get_notification_stats(
    db: AsyncSession,
    cooldown_hours: float,
    recipient_id=None,
    now: datetime | None = None,
) -> list[DedupKeyStats]:
    """Per (recipient, dedup_key): send count, last send, and hours until eligible again."""
    now = now or utcnow()
    query = select(
        Notification.recipient_id,
        Notification.dedup_key,
        func.max(Notification.rule_kind).label("rule_kind"),
        func.max(Notification.subject_id).label("subject_id"),
        func.count().label("total_sent"),
        func.max(Notification.created_at).label("last_sent"),
    ).group_by(Notification.recipient_id, Notification.dedup_key)
    if recipient_id is not None:
        query = query.where(Notification.recipient_id == recipient_id)
    rows = (await db.execute(query.order_by(func.max(Notification.created_at).desc()))).all()

    # Only open rows hold a cooldown; dismissed ones release it.
    open_query = select(
        Notification.recipient_id,
        Notification.dedup_key,
        func.max(Notification.created_at).label("last_open"),
    ).where(Notification.dismissed_at.is_(None)).group_by(Notification.recipient_id, Notification.dedup_key)
    if recipient_id is not None:
        open_query = open_query.where(Notification.recipient_id == recipient_id)
    last_open = {(str(r.recipient_id), r.dedup_key): r.last_open for r in (await db.execute(open_query)).all()}

    stats = []
    for row in rows:
        opened = last_open.get((str(row.recipient_id), row.dedup_key))
        remaining = 0.0
        if opened is not None:
            elapsed_hours = (now - opened).total_seconds() / 3600
            remaining = max(0.0, cooldown_hours - elapsed_hours)
        stats.append(
            DedupKeyStats(
                recipient_id=row.recipient_id,
                dedup_key=row.dedup_key,
                rule_kind=row.rule_kind,
                subject_id=row.subject_id,
                total_sent=row.total_sent,
                last_sent=row.last_sent,
                hours_until_next=round(remaining, 2),
            )
        )
    return stats


# ──────────────────────────────────────────────────────────────────────────
# Health-check run bookkeeping
# ──────────────────────────────────────────────────────────────────────────


def _recent_run_query(check_kind: str, cutoff: datetime) -> Select:
    return select(HealthCheckRun.run_id).where(
        HealthCheckRun.check_kind == check_kind,
        HealthCheckRun.ran_at > cutoff,
    )


async def last_health_check_run(db: AsyncSession, check_kind: str) -> HealthCheckRun | None:
    result = await db.execute(
        select(HealthCheckRun)
        .where(HealthCheckRun.check_kind == check_kind)
        .order_by(HealthCheckRun.ran_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def should_run_health_check(
    db: AsyncSession,
    check_kind: str,
    interval_minutes: float,
    now: datetime | None = None,
) -> bool:
    """True iff no run of `check_kind` started within the last `interval_minutes`."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=interval_minutes)
    result = await db.execute(_recent_run_query(check_kind, cutoff).limit(1))
    return result.first() is None


async def claim_health_check_run(
    db: AsyncSession,
    check_kind: str,
    interval_minutes: float,
    now: datetime | None = None,
) -> HealthCheckRun | None:
    """
    Insert a 'running' HealthCheckRun only if no run of this kind exists
    within the interval. Commits. Returns the claimed run, or None when
    another caller already owns the current interval.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=interval_minutes)

    try:
        if not await _try_lock(db, "health_check", check_kind):
            await db.rollback()
            return None

        run_id = uuid.uuid4()
        inserted = await _insert_unless(
            db,
            HealthCheckRun,
            {
                "run_id": run_id,
                "check_kind": check_kind,
                "ran_at": now,
                "status": "running",
                "notifications_created": 0,
                "notifications_suppressed": 0,
            },
            _recent_run_query(check_kind, cutoff),
        )
    except OperationalError as exc:
        if not _is_lock_contention(exc):
            raise
        await db.rollback()
        logger.debug("store.health_check_lock_contention", check_kind=check_kind)
        return None

    await db.commit()
    if not inserted:
        return None
    return await db.get(HealthCheckRun, run_id)


async def record_health_check_run(
    db: AsyncSession,
    check_kind: str,
    notifications_created: int,
    error_message: str | None,
    *,
    run_id=None,
    notifications_suppressed: int = 0,
    now: datetime | None = None,
) -> HealthCheckRun:
    """
    Finalize a claimed run (run_id given) or append a completed run row.

    The unconditional append is used when the claim itself could not reach
    the store; it records what happened without re-checking the interval.
    """
    now = now or utcnow()
    status = "failed" if error_message else "success"

    run = await db.get(HealthCheckRun, run_id) if run_id is not None else None
    if run is None:
        run = HealthCheckRun(check_kind=check_kind, ran_at=now)
        db.add(run)
    run.finished_at = now
    run.status = status
    run.notifications_created = notifications_created
    run.notifications_suppressed = notifications_suppressed
    run.error_message = error_message[:2000] if error_message else None
    await db.commit()
    return run


async def count_health_check_runs(db: AsyncSession, check_kind: str) -> int:
    result = await db.execute(select(func.count()).where(HealthCheckRun.check_kind == check_kind))
    return result.scalar() or 0


async def list_health_check_runs(db: AsyncSession, check_kind: str | None = None, limit: int = 50) -> list[HealthCheckRun]:
    query = select(HealthCheckRun)
    if check_kind:
        query = query.where(HealthCheckRun.check_kind == check_kind)
    result = await db.execute(query.order_by(HealthCheckRun.ran_at.desc()).limit(limit))
    return list(result.scalars().all())


# ──────────────────────────────────────────────────────────────────────────
# Notification store: queries and mutations for the consuming UI
# ──────────────────────────────────────────────────────────────────────────


async def list_notifications(
    db: AsyncSession,
    recipient_id,
    *,
    skip: int = 0,
    limit: int = 50,
    unread_only: bool = False,
    category: str | None = None,
) -> tuple[list[Notification], int]:
    """Non-dismissed notifications for a recipient, newest first, plus the total count."""
    base = select(Notification).where(
        Notification.recipient_id == recipient_id,
        Notification.dismissed_at.is_(None),
    )
    if unread_only:
        base = base.where(Notification.is_read.is_(False))
    if category:
        base = base.where(Notification.category == category)

    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar() or 0
    result = await db.execute(base.order_by(Notification.created_at.desc()).offset(skip).limit(limit))
    return list(result.scalars().all()), total


async def count_unread(db: AsyncSession, recipient_id) -> int:
    result = await db.execute(
        select(func.count()).where(
            Notification.recipient_id == recipient_id,
            Notification.is_read.is_(False),
            Notification.dismissed_at.is_(None),
        )
    )
    return result.scalar() or 0


async def fetch_since(
    db: AsyncSession,
    recipient_id,
    since: datetime | None,
    limit: int = 200,
    offset: int = 0,
) -> list[Notification]:
    """
    Catch-up page for a reconnecting client, always returned oldest first.

    With `since`, rows created after it are paged forward from `offset`.
    Without it there is no lower bound, so the newest `limit` open rows are
    returned and `offset` is ignored.
    """
    query = select(Notification).where(
        Notification.recipient_id == recipient_id,
        Notification.dismissed_at.is_(None),
    )
    if since is None:
        result = await db.execute(
            query.order_by(Notification.created_at.desc(), Notification.notification_id.desc()).limit(limit)
        )
        return list(reversed(result.scalars().all()))

    result = await db.execute(
        query.where(Notification.created_at > since)
        .order_by(Notification.created_at.asc(), Notification.notification_id.asc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def _get_owned(db: AsyncSession, notification_id, recipient_id) -> Notification | None:
    result = await db.execute(
        select(Notification).where(
            Notification.notification_id == notification_id,
            Notification.recipient_id == recipient_id,
        )
    )
    return result.scalar_one_or_none()


async def mark_read(db: AsyncSession, notification_id, recipient_id, now: datetime | None = None) -> Notification | None:
    notification = await _get_owned(db, notification_id, recipient_id)
    if notification is None:
        return None
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = now or utcnow()
        await db.commit()
        await db.refresh(notification)
    return notification


async def mark_all_read(db: AsyncSession, recipient_id, now: datetime | None = None) -> int:
    result = await db.execute(
        update(Notification)
        .where(
            Notification.recipient_id == recipient_id,
            Notification.is_read.is_(False),
            Notification.dismissed_at.is_(None),
        )
        .values(is_read=True, read_at=now or utcnow())
    )
    await db.commit()
    return result.rowcount or 0


async def dismiss(db: AsyncSession, notification_id, recipient_id, now: datetime | None = None) -> Notification | None:
    notification = await _get_owned(db, notification_id, recipient_id)
    if notification is None:
        return None
    if notification.dismissed_at is None:
        notification.dismissed_at = now or utcnow()
        await db.commit()
        await db.refresh(notification)
    return notification


async def dismiss_all(db: AsyncSession, recipient_id, now: datetime | None = None) -> int:
    result = await db.execute(
        update(Notification)
        .where(
            Notification.recipient_id == recipient_id,
            Notification.dismissed_at.is_(None),
        )
        .values(dismissed_at=now or utcnow())
    )
    await db.commit()
    return result.rowcount or 0


async def delete_notification(db: AsyncSession, notification_id, recipient_id) -> bool:
    """
    Hard-delete one notification. Only dismissed rows may be removed: an
    open row still holds its dedup cooldown.
    """
    notification = await _get_owned(db, notification_id, recipient_id)
    if notification is None:
        return False
    if notification.dismissed_at is None:
        raise PolicyViolationError(
            f"Notification {notification_id} is still open and holds its dedup cooldown; dismiss it before deleting"
        )
    await db.delete(notification)
    await db.commit()
    return True


# ──────────────────────────────────────────────────────────────────────────
# Retention
# ──────────────────────────────────────────────────────────────────────────


async def purge_notifications(db: AsyncSession, retention_days: int, now: datetime | None = None) -> int:
    """
    Hard-delete notifications that were dismissed, or read, more than
    `retention_days` ago. Unread, undismissed rows are never purged.
    """
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)
    result = await db.execute(
        delete(Notification).where(
            or_(
                Notification.dismissed_at < cutoff,
                (Notification.is_read.is_(True)) & (func.coalesce(Notification.read_at, Notification.created_at) < cutoff),
            )
        )
    )
    await db.commit()
    return result.rowcount or 0


async def purge_health_check_runs(db: AsyncSession, retention_days: int, now: datetime | None = None) -> int:
    """Delete run bookkeeping older than `retention_days`, keeping the latest row per kind."""
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)
    latest = select(HealthCheckRun.check_kind, func.max(HealthCheckRun.ran_at).label("latest")).group_by(
        HealthCheckRun.check_kind
    )
    keep = {(row.check_kind, row.latest) for row in (await db.execute(latest)).all()}

    stale = (
        await db.execute(select(HealthCheckRun.run_id, HealthCheckRun.check_kind, HealthCheckRun.ran_at).where(HealthCheckRun.ran_at < cutoff))
    ).all()
    doomed = [row.run_id for row in stale if (row.check_kind, row.ran_at) not in keep]
    if not doomed:
        return 0
    result = await db.execute(delete(HealthCheckRun).where(HealthCheckRun.run_id.in_(doomed)))
    await db.commit()
    return result.rowcount or 0
