import logging
import re
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from pydantic import ValidationError

from database import UserStore, retry_on_stale
from errors import Conflict, NotFound, ValidationFailed
from schemas import Availability, BloodGroup, LocationGeo, User, validation_messages

logger = logging.getLogger(__name__)

# Bangladeshi mobile numbers, e.g. 01712345678
PHONE_PATTERN = re.compile(r"^01[3-9]\d{8}$")

DONOR_RANKING = [("totalDonations", -1), ("points", -1)]


class Clock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class UserDirectory:
    """Looks up, registers and updates user documents."""

    def __init__(self, store: UserStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or Clock()

    def now(self) -> datetime:
        return self.clock.now()

    def get(self, user_id: str, label: str = "User") -> User:
        user = self.store.find_by_id(user_id)
        if user is None:
            raise NotFound(f"{label} not found", userId=user_id)
        return user

    def save(self, user: User) -> User:
        user.updated_at = self.now()
        return self.store.save(user)

    def find(self, query: Optional[dict] = None, sort=None) -> Iterator[User]:
        return self.store.find(query, sort=sort)

    def register(self, profile: dict) -> User:
        if self.store.find_one({"email": profile.get("email")}):
            raise Conflict("User already exists with this email", email=profile.get("email"))
        now = self.now()
        try:
            user = User.model_validate({**profile, "createdAt": now, "updatedAt": now})
        except ValidationError as e:
            raise ValidationFailed("Invalid user profile", errors=validation_messages(e))
        user = self.store.insert(user)
        logger.info("Registered user %s (%s)", user.id, user.blood_group)
        return user

    def find_by_phone(self, phone: str) -> User:
        if not phone:
            raise ValidationFailed("Phone number is required")
        if not PHONE_PATTERN.match(phone):
            raise ValidationFailed(
                "Invalid phone number format. Please enter a valid Bangladesh phone number (e.g., 01712345678)"
            )
        user = self.store.find_one({"phone": phone})
        if user is None:
            raise NotFound("No user found with this phone number")
        return user

    @retry_on_stale
    def set_availability(self, user_id: str, availability: Availability) -> User:
        user = self.get(user_id)
        user.availability = availability
        return self.save(user)

    @retry_on_stale
    def update_location(self, user_id: str, location_geo: dict) -> User:
        user = self.get(user_id)
        geo = user.location_geo.model_dump() if user.location_geo else {}
        for field in ("latitude", "longitude", "name", "is_enabled"):
            if field in location_geo:
                geo[field] = location_geo[field]
        try:
            user.location_geo = LocationGeo(**geo)
        except ValidationError as e:
            raise ValidationFailed("Invalid location", errors=validation_messages(e))
        return self.save(user)

    def _eligible_now(self, user: User) -> bool:
        return user.eligibility_date is None or user.eligibility_date <= self.now()

    def available_donors(self, blood_group: Optional[BloodGroup], district: Optional[str] = None,
                         thana: Optional[str] = None) -> List[User]:
        if not blood_group:
            raise ValidationFailed("Blood group is required")
        query = {"bloodGroup": blood_group, "availability": {"$ne": "Unavailable"}, "isActive": True}
        if district:
            query["district"] = district
        if thana:
            query["thana"] = thana
        return [u for u in self.find(query, sort=DONOR_RANKING) if self._eligible_now(u)]

    def users_with_location(self, blood_group: Optional[str] = None) -> List[dict]:
        query = {
            "locationGeo.latitude": {"$ne": None},
            "locationGeo.longitude": {"$ne": None},
            "isActive": {"$ne": False},
            "availability": {"$ne": "Unavailable"},
        }
        if blood_group and blood_group != "All":
            query["bloodGroup"] = blood_group
        pins = []
        for user in self.find(query, sort=DONOR_RANKING):
            if not self._eligible_now(user):
                continue
            geo = user.location_geo
            if geo is None or geo.latitude is None or geo.longitude is None:
                continue
            pins.append({
                "id": user.id,
                "name": user.name,
                "bloodGroup": user.blood_group,
                "phone": user.phone or "",
                "totalDonations": user.total_donations,
                "points": user.points,
                "location": {
                    "latitude": geo.latitude,
                    "longitude": geo.longitude,
                    "name": geo.name or user.location or user.address or "Location",
                },
                "locationEnabled": geo.is_enabled,
            })
        return pins

    def donation_history(self, user_id: str) -> dict:
        user = self.get(user_id)
        entries = []
        for donation in user.donation_history:
            recipient = None
            if donation.recipient_id:
                found = self.store.find_by_id(donation.recipient_id)
                if found is not None:
                    recipient = {
                        "name": found.name,
                        "phone": found.phone,
                        "email": found.email,
                        "bloodGroup": found.blood_group,
                        "location": found.location,
                    }
            entries.append({**donation.model_dump(by_alias=True), "recipient": recipient})
        # undated entries last; ISO dates sort correctly as strings
        entries.sort(key=lambda e: e["date"] or "", reverse=True)
        return {
            "donationHistory": entries,
            "totalDonations": user.total_donations,
            "points": user.points,
            "lastDonation": user.last_donation,
        }
