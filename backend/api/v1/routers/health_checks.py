"""
Health Checks Router — manual triggers and run history for the alert scheduler.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.facts import SqlFactSource
from alerts.rules import HealthCheckFacts, summarize
from alerts.scheduler import CHECK_KIND_RULES, HealthCheckScheduler, get_scheduler
from api.deps import get_current_user, get_db, is_admin
from core.config import get_settings
from db.store import last_health_check_run, list_health_check_runs, should_run_health_check

router = APIRouter(prefix="/api/v1/health-checks", tags=["health-checks"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class HealthCheckRunResponse(BaseModel):
    run_id: UUID
    check_kind: str
    ran_at: datetime
    finished_at: datetime | None
    status: str
    notifications_created: int
    notifications_suppressed: int
    error_message: str | None

    model_config = {"from_attributes": True}


class TriggerResponse(BaseModel):
    check_kind: str
    ran: bool
    reason: str | None
    run_id: str | None
    recipient_id: str | None
    notifications_created: int
    notifications_suppressed: int
    notifications_failed: int
    error: str | None
    forced: bool


class CheckKindStatus(BaseModel):
    check_kind: str
    due: bool
    last_run: HealthCheckRunResponse | None


class HealthSummary(BaseModel):
    stock: dict[str, int]
    interval_minutes: int
    checks: list[CheckKindStatus]


def _validate_check_kind(check_kind: str) -> str:
    if check_kind not in CHECK_KIND_RULES:
        raise HTTPException(
            status_code=422,
            detail=f"Unknown check kind '{check_kind}'. Expected one of: {', '.join(CHECK_KIND_RULES)}",
        )
    return check_kind


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/{check_kind}/trigger", response_model=TriggerResponse)
async def trigger_health_check(
    check_kind: str,
    force: bool = False,
    user: dict = Depends(get_current_user),
    scheduler: HealthCheckScheduler = Depends(get_scheduler),
):
    """
    Ask the scheduler for a pass. Without `force` this is debounced like any
    other trigger; `force` (admins only) runs immediately but is still recorded.
    """
    _validate_check_kind(check_kind)
    if force and not is_admin(user):
        raise HTTPException(status_code=403, detail="Admin role required to force a health check")
    outcome = await scheduler.run(check_kind, force=force)
    return TriggerResponse(**outcome.as_dict())


@router.get("/runs", response_model=list[HealthCheckRunResponse])
async def list_runs(
    check_kind: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    if check_kind is not None:
        _validate_check_kind(check_kind)
    return await list_health_check_runs(db, check_kind=check_kind, limit=limit)


@router.get("/summary", response_model=HealthSummary)
async def health_summary(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
    scheduler: HealthCheckScheduler = Depends(get_scheduler),
):
    """Current stock-health counts plus, per check kind, the last run and whether one is due."""
    settings = get_settings()
    source = SqlFactSource(db)
    facts = HealthCheckFacts(
        stock=await source.list_stock_levels(),
        expiring=await source.list_expiring_candidates(settings.expiry_window_days),
    )

    window_minutes = scheduler.claim_window().total_seconds() / 60
    checks = []
    for check_kind in CHECK_KIND_RULES:
        last = await last_health_check_run(db, check_kind)
        due = await should_run_health_check(db, check_kind, window_minutes)
        checks.append(
            CheckKindStatus(
                check_kind=check_kind,
                due=due,
                last_run=HealthCheckRunResponse.model_validate(last) if last else None,
            )
        )

    return HealthSummary(
        stock=summarize(facts, settings.expiry_window_days),
        interval_minutes=scheduler.interval_minutes,
        checks=checks,
    )
