"""
Donor eligibility window.

A donor is eligible when ``eligibility_date`` is unset or already passed. Each
moderated match pushes the date four months out and marks the donor
Unavailable; the window is expired lazily, the first time eligibility is read
after it has passed.
"""

import logging
import math
from datetime import datetime
from typing import Optional, Tuple

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel

from database import retry_on_stale
from directory import UserDirectory
from schemas import Availability, User

logger = logging.getLogger(__name__)

COOLDOWN = relativedelta(months=4)

SECONDS_PER_DAY = 24 * 60 * 60


class Eligibility(BaseModel):
    is_eligible: bool
    days_remaining: int = 0
    availability: Availability
    eligibility_date: Optional[datetime] = None
    # stored window has passed but the document still says Unavailable
    lapsed: bool = False

    @property
    def message(self) -> str:
        if self.is_eligible:
            return "You are eligible to donate blood."
        return (
            f"You are not eligible to donate yet. You can donate again in {self.days_remaining} day(s) "
            f"(after {self.eligibility_date.date().isoformat()})."
        )


def next_eligibility_date(now: datetime) -> datetime:
    return now + COOLDOWN


def evaluate(user: User, now: datetime) -> Eligibility:
    """Pure eligibility check of ``user`` at ``now``."""
    until = user.eligibility_date
    if until is None:
        return Eligibility(is_eligible=True, availability=user.availability)
    if until <= now:
        lapsed = user.availability == "Unavailable"
        return Eligibility(is_eligible=True, availability="Available" if lapsed else user.availability,
                           lapsed=lapsed)
    days = math.ceil((until - now).total_seconds() / SECONDS_PER_DAY)
    return Eligibility(is_eligible=False, days_remaining=days, availability=user.availability,
                       eligibility_date=until)


class EligibilityEvaluator:

    def __init__(self, directory: UserDirectory):
        self.directory = directory

    def check(self, user: User) -> Tuple[User, Eligibility]:
        """Evaluate ``user`` and persist the reset when its window has just lapsed.

        Returns the (possibly re-read) user together with the result.
        """
        result = evaluate(user, self.directory.now())
        if not result.lapsed:
            return user, result
        return self._reset(user.id)

    @retry_on_stale
    def _reset(self, user_id: str) -> Tuple[User, Eligibility]:
        user = self.directory.get(user_id)
        result = evaluate(user, self.directory.now())
        if result.lapsed:
            user.eligibility_date = None
            user.availability = "Available"
            user = self.directory.save(user)
            logger.info("Eligibility window lapsed for user %s; availability restored", user_id)
            result = evaluate(user, self.directory.now())
        return user, result

    def status(self, user_id: str) -> dict:
        user, result = self.check(self.directory.get(user_id))
        return {
            "isEligible": result.is_eligible,
            "availability": result.availability,
            "eligibilityDate": result.eligibility_date,
            "daysRemaining": result.days_remaining,
            "lastDonation": user.last_donation,
            "message": result.message,
        }
