"""
Warranty calculator - expiry dates, remaining days, and the pause/resume cycle.

An appointment's warranty lives in three columns (warranty_expires_at,
warranty_paused_at, warranty_remaining_days). Read them as a WarrantyState and
write them only through the helpers below, so the pause pair is always set or
cleared together.

    Active(expires_at)                   countdown running
    Paused(remaining_days, paused_at)    countdown stopped by an open backjob
    Expired(expired_at)                  window over
    NotApplicable()                      service carries no warranty / not finished
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from fixmo.utils.timezone import as_utc, utcnow

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class Active:
    expires_at: datetime


@dataclass(frozen=True)
class Paused:
    remaining_days: int
    paused_at: datetime


@dataclass(frozen=True)
class Expired:
    expired_at: datetime


@dataclass(frozen=True)
class NotApplicable:
    pass


WarrantyState = Union[Active, Paused, Expired, NotApplicable]


def has_warranty(warranty_days) -> bool:
    """Positive whole number of days. Booleans and floats don't count."""
    return isinstance(warranty_days, int) and not isinstance(warranty_days, bool) and warranty_days > 0


def calculate_warranty_expiry(base_date: datetime, warranty_days) -> Optional[datetime]:
    """base_date + warranty_days, or None when there is no warranty."""
    if not has_warranty(warranty_days):
        return None
    return as_utc(base_date) + timedelta(days=warranty_days)


def remaining_warranty_days(expires_at: datetime, now: Optional[datetime] = None) -> int:
    """Whole days left, rounded up, never negative."""
    now = now or utcnow()
    seconds = (as_utc(expires_at) - now).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def derived_expiry(appointment) -> Optional[datetime]:
    """Stored expiry, else finished_at + warranty_days when both are known."""
    if appointment.warranty_expires_at is not None:
        return as_utc(appointment.warranty_expires_at)
    if appointment.finished_at is not None:
        return calculate_warranty_expiry(appointment.finished_at, appointment.warranty_days)
    return None


def warranty_state(appointment, now: Optional[datetime] = None) -> WarrantyState:
    now = now or utcnow()
    if appointment.warranty_paused_at is not None and appointment.warranty_remaining_days is not None:
        return Paused(
            remaining_days=appointment.warranty_remaining_days,
            paused_at=as_utc(appointment.warranty_paused_at),
        )
    expires_at = as_utc(appointment.warranty_expires_at)
    if expires_at is None:
        return NotApplicable()
    if expires_at <= now:
        return Expired(expired_at=expires_at)
    return Active(expires_at=expires_at)


def is_paused(appointment) -> bool:
    return isinstance(warranty_state(appointment), Paused)


# ---------------------------------------------------------------------------
# Mutators
# ---------------------------------------------------------------------------

def pause_warranty(appointment, now: Optional[datetime] = None) -> int:
    """Stop the countdown. Returns the remaining days snapshot."""
    now = now or utcnow()
    expires_at = derived_expiry(appointment)
    remaining = remaining_warranty_days(expires_at, now) if expires_at else 0
    appointment.warranty_paused_at = now
    appointment.warranty_remaining_days = remaining
    return remaining


def resume_warranty(appointment, now: Optional[datetime] = None) -> Optional[datetime]:
    """Restart a paused countdown at now + remaining days. No-op (None) if not paused."""
    state = warranty_state(appointment, now)
    if not isinstance(state, Paused):
        return None
    now = now or utcnow()
    new_expiry = now + timedelta(days=state.remaining_days)
    appointment.warranty_expires_at = new_expiry
    appointment.warranty_paused_at = None
    appointment.warranty_remaining_days = None
    return new_expiry


def start_warranty(appointment, base_date: datetime) -> Optional[datetime]:
    """Fresh window from base_date using the appointment's snapshotted warranty_days."""
    expiry = calculate_warranty_expiry(base_date, appointment.warranty_days)
    if expiry is not None:
        appointment.warranty_expires_at = expiry
    return expiry


def open_warranty_window(appointment, base_date: datetime, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Resume a paused countdown (from now), otherwise start a fresh one from base_date.
    Used when work is finished, including the second finish after a backjob reschedule.
    """
    resumed = resume_warranty(appointment, now)
    if resumed is not None:
        return resumed
    return start_warranty(appointment, base_date)


def expire_warranty(appointment, now: Optional[datetime] = None) -> None:
    """End the window immediately and drop any pause snapshot."""
    appointment.warranty_expires_at = now or utcnow()
    appointment.warranty_paused_at = None
    appointment.warranty_remaining_days = None
