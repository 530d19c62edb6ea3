"""
Recipient selection for health-check alerts.

Health-check alerts go to exactly one on-duty recipient per pass, never
to every eligible user. Which one is a configurable, deterministic policy:

  - lowest_id:            smallest user_id among eligible active users
  - most_recently_active: latest last_active_at, ties broken by lowest_id
  - round_robin:          rotates through eligible users (sorted by id)
                          using a caller-supplied rotation counter
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import User

logger = structlog.get_logger()


@dataclass(frozen=True)
class Recipient:
    user_id: uuid.UUID
    email: str
    role: str
    last_active_at: datetime | None = None
    full_name: str | None = None


class RecipientDirectory(ABC):
    """Boundary to the user/role store."""

    @abstractmethod
    async def list_eligible_recipients(self, role: str) -> list[Recipient]:
        ...


class SqlRecipientDirectory(RecipientDirectory):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_eligible_recipients(self, role: str) -> list[Recipient]:
        result = await self.db.execute(
            select(User).where(User.role == role, User.is_active.is_(True)).order_by(User.user_id)
        )
        return [
            Recipient(
                user_id=user.user_id,
                email=user.email,
                role=user.role,
                last_active_at=user.last_active_at,
                full_name=user.full_name,
            )
            for user in result.scalars().all()
        ]


def _id_key(recipient: Recipient) -> str:
    return str(recipient.user_id)


def select_recipient(recipients: list[Recipient], policy: str = "lowest_id", rotation: int = 0) -> Recipient | None:
    """Pick one recipient. Same inputs always give the same answer."""
    unique = {_id_key(r): r for r in recipients}
    ordered = sorted(unique.values(), key=_id_key)
    if not ordered:
        return None

    if policy == "lowest_id":
        return ordered[0]
    if policy == "most_recently_active":
        active = [r for r in ordered if r.last_active_at is not None]
        if not active:
            return ordered[0]
        latest = max(r.last_active_at for r in active)
        return next(r for r in active if r.last_active_at == latest)
    if policy == "round_robin":
        return ordered[rotation % len(ordered)]
    raise ValueError(f"Unknown recipient selection policy '{policy}'")


async def resolve_recipient(
    directory: RecipientDirectory,
    roles: list[str],
    policy: str = "lowest_id",
    rotation: int = 0,
) -> Recipient | None:
    """Query the directory once per role and select the single recipient for this pass."""
    eligible: list[Recipient] = []
    for role in roles:
        eligible.extend(await directory.list_eligible_recipients(role))
    recipient = select_recipient(eligible, policy=policy, rotation=rotation)
    logger.debug(
        "recipients.selected",
        policy=policy,
        eligible_count=len(eligible),
        recipient_id=str(recipient.user_id) if recipient else None,
    )
    return recipient
