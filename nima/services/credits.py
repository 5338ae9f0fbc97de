"""
nima/services/credits.py
────────────────────────
Credit ledger stored on the users row.

Balance = free weekly pool + purchased pool. Spending drains the free pool
first. The free pool is reset lazily: whenever the balance is touched after
the user's weekly boundary has passed, it is restored once and the boundary
moves forward on its original weekly grid.

Every write is one conditional UPDATE guarded by users.credits_version, so a
deduction computed from a stale read never lands; the loser re-reads and
tries again.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session, select

from nima.core.config import get_settings
from nima.core.exceptions import CreditContentionError
from nima.models import ONE_WEEK, User

logger = logging.getLogger(__name__)
settings = get_settings()

INSUFFICIENT_CREDITS = "insufficient_credits"
USER_NOT_FOUND = "User not found"


@dataclass
class CreditResult:
    success: bool
    remaining: int
    error: Optional[str] = None


@dataclass
class CreditBalance:
    free_remaining: int
    purchased: int
    total: int
    free_per_week: int
    next_reset_at: datetime


def _as_utc(value: datetime) -> datetime:
    # SQLite hands datetimes back naive; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def apply_weekly_reset(
    free_remaining: int,
    reset_at: datetime,
    now: datetime,
    free_per_week: int,
) -> tuple[int, datetime]:
    """
    Return (free_remaining, next_reset_at) as of `now`.

    Crossing one or more boundaries restores the free pool exactly once and
    advances the boundary by whole weeks, so it never drifts towards `now`.
    """
    reset_at = _as_utc(reset_at)
    now = _as_utc(now)
    if now < reset_at:
        return free_remaining, reset_at
    weeks_crossed = (now - reset_at) // ONE_WEEK + 1
    return free_per_week, reset_at + weeks_crossed * ONE_WEEK


def split_deduction(free_remaining: int, purchased: int, count: int) -> tuple[int, int]:
    """Take `count` from the free pool first, the rest from purchased."""
    from_free = min(count, free_remaining)
    return free_remaining - from_free, purchased - (count - from_free)


def get_balance(user: User, now: Optional[datetime] = None) -> CreditBalance:
    """Read-only view of the balance; the reset is computed, not persisted."""
    now = now or datetime.now(timezone.utc)
    free, next_reset = apply_weekly_reset(
        user.free_credits_remaining,
        user.weekly_credits_reset_at,
        now,
        settings.FREE_WEEKLY_CREDITS,
    )
    return CreditBalance(
        free_remaining=free,
        purchased=user.purchased_credits,
        total=free + user.purchased_credits,
        free_per_week=settings.FREE_WEEKLY_CREDITS,
        next_reset_at=next_reset,
    )


def _load_user(session: Session, user_id: int) -> Optional[User]:
    statement = select(User).where(User.id == user_id).execution_options(populate_existing=True)
    return session.exec(statement).first()


def _compare_and_swap(
    session: Session,
    user_id: int,
    expected_version: int,
    free_remaining: int,
    purchased: int,
    reset_at: datetime,
    now: datetime,
) -> bool:
    """Write the new balance only if nobody else wrote since our read."""
    statement = (
        update(User)
        .where(User.id == user_id, User.credits_version == expected_version)
        .values(
            free_credits_remaining=free_remaining,
            purchased_credits=purchased,
            weekly_credits_reset_at=reset_at,
            credits_version=expected_version + 1,
            updated_at=now,
        )
    )
    result = session.connection().execute(statement)
    return result.rowcount == 1


def deduct_credits(
    session: Session,
    user_id: int,
    count: int = 1,
    now: Optional[datetime] = None,
) -> CreditResult:
    """
    Spend `count` credits or change nothing.

    Returns a failed CreditResult with error 'insufficient_credits' when the
    balance cannot cover the whole amount.
    """
    if count < 1:
        raise ValueError("count must be a positive integer")
    now = now or datetime.now(timezone.utc)

    for attempt in range(1, settings.CREDIT_CAS_MAX_ATTEMPTS + 1):
        user = _load_user(session, user_id)
        if user is None:
            return CreditResult(success=False, remaining=0, error=USER_NOT_FOUND)

        free, reset_at = apply_weekly_reset(
            user.free_credits_remaining,
            user.weekly_credits_reset_at,
            now,
            settings.FREE_WEEKLY_CREDITS,
        )
        available = free + user.purchased_credits
        if available < count:
            session.rollback()
            logger.info(
                "Credit deduction refused: user_id=%s requested=%d available=%d",
                user_id, count, available,
            )
            return CreditResult(success=False, remaining=available, error=INSUFFICIENT_CREDITS)

        new_free, new_purchased = split_deduction(free, user.purchased_credits, count)
        if _compare_and_swap(
            session, user_id, user.credits_version, new_free, new_purchased, reset_at, now
        ):
            session.commit()
            remaining = new_free + new_purchased
            logger.info(
                "Deducted %d credit(s): user_id=%s remaining=%d", count, user_id, remaining
            )
            return CreditResult(success=True, remaining=remaining)

        session.rollback()
        logger.debug("Credit write lost a race (attempt %d) for user_id=%s", attempt, user_id)

    logger.warning("Credit deduction gave up after %d attempts: user_id=%s", attempt, user_id)
    raise CreditContentionError()


def add_credits(
    session: Session,
    user_id: int,
    amount: int,
    now: Optional[datetime] = None,
) -> CreditBalance:
    """Top up the purchased pool (credit pack bought)."""
    if amount < 1:
        raise ValueError("amount must be a positive integer")
    now = now or datetime.now(timezone.utc)

    for _ in range(settings.CREDIT_CAS_MAX_ATTEMPTS):
        user = _load_user(session, user_id)
        if user is None:
            raise ValueError(f"User {user_id} not found")
        free, reset_at = apply_weekly_reset(
            user.free_credits_remaining,
            user.weekly_credits_reset_at,
            now,
            settings.FREE_WEEKLY_CREDITS,
        )
        purchased = user.purchased_credits + amount
        if _compare_and_swap(session, user_id, user.credits_version, free, purchased, reset_at, now):
            session.commit()
            logger.info("Added %d credit(s): user_id=%s purchased=%d", amount, user_id, purchased)
            return CreditBalance(
                free_remaining=free,
                purchased=purchased,
                total=free + purchased,
                free_per_week=settings.FREE_WEEKLY_CREDITS,
                next_reset_at=reset_at,
            )
        session.rollback()

    raise CreditContentionError()
