"""
Overdue penalty generation.

The late-fee rule lives in PenaltyPolicy so it can be configured per
deployment (PENALTY_DAILY_RATE, PENALTY_DURATION_DAYS) or replaced in tests.

Rule:
- lateness is counted in started days: 1 second late is 1 day, 24h + 1s is 2
- amount = late days * daily rate, rounded to cents
- the penalty is in force from the moment it is generated for `duration`
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from lending.config import PENALTY_DAILY_RATE, PENALTY_DURATION_DAYS
from lending.errors import InvalidArgumentError
from lending.models import Penalty, as_utc


OVERDUE_REASON = "overdue return"

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class PenaltyPolicy:
    daily_rate: Decimal = PENALTY_DAILY_RATE
    duration: timedelta = field(default_factory=lambda: timedelta(days=PENALTY_DURATION_DAYS))

    def __post_init__(self):
        if self.daily_rate <= 0:
            raise InvalidArgumentError("Penalty daily rate must be positive")
        if self.duration <= timedelta(0):
            raise InvalidArgumentError("Penalty duration must be positive")

    def late_days(self, due_at: datetime, returned_at: datetime) -> int:
        overdue = as_utc(returned_at) - as_utc(due_at)
        if overdue <= timedelta(0):
            return 0
        days, remainder = divmod(overdue, ONE_DAY)
        return days + (1 if remainder else 0)

    def amount_for(self, late_days: int) -> Decimal:
        return (self.daily_rate * late_days).quantize(Decimal("0.01"))


def generate_overdue_penalty(
    due_at: datetime,
    returned_at: datetime,
    borrower_id: int,
    loan_id: int,
    now: datetime,
    policy: Optional[PenaltyPolicy] = None,
) -> Optional[Penalty]:
    """
    Build the penalty owed for a late return, or None when returned on time.

    Only constructs the object; persisting it is the caller's job.
    """
    policy = policy or PenaltyPolicy()
    days = policy.late_days(due_at, returned_at)
    if days == 0:
        return None
    return Penalty.issue(
        borrower_id=borrower_id,
        loan_id=loan_id,
        amount=policy.amount_for(days),
        starts_at=now,
        ends_at=now + policy.duration,
        reason=OVERDUE_REASON,
        now=now,
    )
