import math
from datetime import datetime

from pydantic import BaseModel


class TimeRemaining(BaseModel):
    # Magnitude only; direction is carried by is_overdue
    minutes: int
    is_overdue: bool
    display_text: str


def time_remaining(deadline: datetime, now: datetime) -> TimeRemaining:
    """Whole minutes left before ``deadline``, rounded toward the past.

    A deadline that is exactly now counts as overdue by 0 minutes.
    """
    diff = math.floor((deadline - now).total_seconds() / 60)

    if diff <= 0:
        return TimeRemaining(
            minutes=abs(diff),
            is_overdue=True,
            display_text=f"{abs(diff)}m overdue",
        )

    if diff < 60:
        return TimeRemaining(
            minutes=diff,
            is_overdue=False,
            display_text=f"{diff}m remaining",
        )

    hours, mins = divmod(diff, 60)
    return TimeRemaining(
        minutes=diff,
        is_overdue=False,
        display_text=f"{hours}h {mins}m remaining",
    )
