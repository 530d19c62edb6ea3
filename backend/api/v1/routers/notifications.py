"""
Notifications Router — in-app notification inbox and dedup controls.
"""

from datetime import datetime, timezone
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_current_user_id, get_db, is_admin
from core.config import get_settings
from db import store
from db.models import User
from db.store import PolicyViolationError

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class NotificationResponse(BaseModel):
    notification_id: UUID
    recipient_id: UUID
    dedup_key: str
    rule_kind: str | None
    subject_id: str | None
    category: str
    severity: str
    title: str
    message: str
    payload: dict | None
    is_read: bool
    read_at: datetime | None
    dismissed_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class NotificationPage(BaseModel):
    items: list[NotificationResponse]
    total: int
    skip: int
    limit: int


class UnreadCount(BaseModel):
    unread: int


class BulkUpdateResult(BaseModel):
    updated: int


class DedupStatsResponse(BaseModel):
    recipient_id: UUID
    dedup_key: str
    rule_kind: str | None
    subject_id: str | None
    total_sent: int
    last_sent: datetime
    hours_until_next: float

    model_config = {"from_attributes": True}


class CooldownResetRequest(BaseModel):
    dedup_key: str
    recipient_id: UUID | None = None


class CooldownResetResponse(BaseModel):
    recipient_id: UUID
    dedup_key: str
    dismissed: int


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=NotificationPage)
async def list_notifications(
    unread_only: bool = False,
    category: str | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    """List the caller's open notifications, newest first."""
    items, total = await store.list_notifications(
        db,
        user_id,
        skip=skip,
        limit=limit,
        unread_only=unread_only,
        category=category,
    )
    return NotificationPage(items=items, total=total, skip=skip, limit=limit)


@router.get("/unread-count", response_model=UnreadCount)
async def unread_count(
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return UnreadCount(unread=await store.count_unread(db, user_id))


@router.get("/since", response_model=list[NotificationResponse])
async def notifications_since(
    since: datetime | None = None,
    limit: int = Query(200, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    """Catch-up fetch for a reconnecting client, oldest first. Without `since`, the newest page."""
    if since is not None and since.tzinfo is not None:
        since = since.astimezone(timezone.utc).replace(tzinfo=None)
    return await store.fetch_since(db, user_id, since, limit=limit, offset=offset)


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    notification = await store.mark_read(db, notification_id, user_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@router.post("/read-all", response_model=BulkUpdateResult)
async def mark_all_read(
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return BulkUpdateResult(updated=await store.mark_all_read(db, user_id))


@router.patch("/{notification_id}/dismiss", response_model=NotificationResponse)
async def dismiss_notification(
    notification_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    """Dismiss a notification. This also releases its dedup cooldown."""
    notification = await store.dismiss(db, notification_id, user_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@router.post("/dismiss-all", response_model=BulkUpdateResult)
async def dismiss_all(
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return BulkUpdateResult(updated=await store.dismiss_all(db, user_id))


@router.delete("/{notification_id}", status_code=204)
async def delete_notification(
    notification_id: UUID,
    db: AsyncSession = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    """Hard-delete a dismissed notification. Open notifications are rejected with 409."""
    deleted = await store.delete_notification(db, notification_id, user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Notification not found")
    return Response(status_code=204)


@router.get("/stats", response_model=list[DedupStatsResponse])
async def notification_stats(
    recipient_id: UUID | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
    user_id: UUID = Depends(get_current_user_id),
):
    """
    Per dedup key: how often it fired and how long until it may fire again.

    Admins may inspect any recipient (or all, when recipient_id is omitted);
    everyone else sees only their own keys.
    """
    if not is_admin(user):
        if recipient_id is not None and recipient_id != user_id:
            raise HTTPException(status_code=403, detail="Cannot inspect another recipient's notifications")
        recipient_id = user_id
    settings = get_settings()
    return await store.get_notification_stats(db, settings.dedup_cooldown_hours, recipient_id=recipient_id)


@router.post("/cooldowns/reset", response_model=CooldownResetResponse)
async def reset_cooldown(
    body: CooldownResetRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
    user_id: UUID = Depends(get_current_user_id),
):
    """Let a dedup key fire again for a recipient by dismissing its open notifications."""
    target_id = body.recipient_id or user_id
    if target_id != user_id and not is_admin(user):
        raise HTTPException(status_code=403, detail="Admin role required to reset another recipient's cooldown")

    recipient = await db.get(User, target_id)
    if recipient is None:
        raise HTTPException(status_code=404, detail="Recipient not found")
    if not recipient.is_active:
        raise PolicyViolationError(
            f"Recipient {target_id} is inactive and cannot receive alerts; resetting its cooldown would have no effect"
        )

    dismissed = await store.reset_notification_cooldown(db, target_id, body.dedup_key)
    return CooldownResetResponse(recipient_id=target_id, dedup_key=body.dedup_key, dismissed=dismissed)
