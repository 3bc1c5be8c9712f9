"""
Database Schemas

Pydantic models for the documents kept in MongoDB. Everything a user owns
(blood requests, connection requests, accepted connections, donation history,
circle) is stored inside that user's document, so a single document write is
atomic for all of it.

Attributes are snake_case in Python and camelCase in the stored documents and
JSON payloads, e.g. ``blood_group`` <-> ``bloodGroup``.

Model name is converted to lowercase for the collection name:
- User -> "user" collection
"""

from datetime import datetime, timezone
from typing import Annotated, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

# ---------------- Shared types -----------------

BloodGroup = Literal[
    "A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"
]

Availability = Literal["Available", "Unavailable"]

ConnectionStatus = Literal["pending", "accepted", "rejected"]


def _as_utc(value: datetime) -> datetime:
    # Mongo hands back naive UTC datetimes unless the client is tz aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


def new_id() -> str:
    return str(ObjectId())


def validation_messages(error: ValidationError) -> List[str]:
    return [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in error.errors()]


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------- Embedded entities -----------------

class LocationGeo(Document):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: str = ""
    is_enabled: bool = False


class BloodRequest(Document):
    id: str = Field(default_factory=new_id)
    blood_group: BloodGroup
    date: str = Field(..., min_length=1)
    time: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    district: str = Field(..., min_length=1)
    thana: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    is_accepted: bool = False
    accepted_by: Optional[str] = Field(None, description="User id of the accepting donor")
    accepted_by_name: Optional[str] = None
    created_at: UtcDatetime

    @model_validator(mode="after")
    def _accepted_by_matches_flag(self):
        if self.is_accepted != (self.accepted_by is not None):
            raise ValueError("acceptedBy must be set exactly when isAccepted is true")
        return self

    def mark_accepted(self, donor: "User") -> None:
        self.is_accepted = True
        self.accepted_by = donor.id
        self.accepted_by_name = donor.name


class ConnectionRequest(Document):
    id: str = Field(default_factory=new_id)
    requester_id: str
    requester_name: str
    requester_phone: str = ""
    request_id: str = Field(..., description="Blood request id under the requester")
    blood_group: BloodGroup
    date: str
    time: str
    location: str
    district: str
    thana: str
    phone: str
    status: ConnectionStatus = "pending"
    created_at: UtcDatetime


class AcceptedConnection(Document):
    id: str = Field(default_factory=new_id)
    user_id: str = Field(..., description="The counterpart of the match")
    name: str
    phone: str = ""
    blood_group: Optional[BloodGroup] = None
    connection_request_id: str
    blood_request_id: str
    accepted_at: UtcDatetime

    @property
    def key(self) -> str:
        return f"{self.user_id}:{self.blood_request_id}"


class DonationRecord(Document):
    id: str = Field(default_factory=new_id)
    name: str = Field(..., description="Recipient name at donation time")
    blood_group: BloodGroup
    date: str
    location: str
    recipient_id: Optional[str] = None


class CircleEntry(Document):
    user_id: str
    name: str
    phone: str
    blood_group: BloodGroup
    location: str = ""
    last_donation: str = ""
    total_donations: int = 0
    added_at: UtcDatetime


# ---------------- User -----------------

class User(Document):
    id: Optional[str] = Field(None, description="Document id as string")
    version: int = Field(0, ge=0, description="Optimistic concurrency counter")
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Email address")
    phone: Optional[str] = Field(None, description="Contact phone number")
    age: Optional[int] = Field(None, ge=0)
    weight: Optional[float] = Field(None, ge=0)
    address: Optional[str] = None
    district: Optional[str] = None
    thana: Optional[str] = None
    location: Optional[str] = None
    location_geo: Optional[LocationGeo] = None
    blood_group: BloodGroup
    availability: Availability = "Available"
    health_status: Optional[str] = None
    last_donation: Optional[str] = None
    eligibility_date: Optional[UtcDatetime] = Field(
        None, description="When the donor may donate again; null means eligible"
    )
    total_donations: int = Field(0, ge=0)
    points: int = Field(0, ge=0)
    donation_history: List[DonationRecord] = []
    blood_requests: Dict[str, BloodRequest] = {}
    connection_requests: Dict[str, ConnectionRequest] = {}
    accepted_connections: Dict[str, AcceptedConnection] = {}
    circle: Dict[str, CircleEntry] = {}
    role: str = "user"
    is_active: bool = True
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None

    def record_donation(self, requester: "User", request, points: int) -> DonationRecord:
        """Credit a donation for ``request`` (a blood or connection request)."""
        entry = DonationRecord(
            name=requester.name,
            blood_group=request.blood_group,
            date=request.date,
            location=request.location,
            recipient_id=requester.id,
        )
        self.donation_history.append(entry)
        self.total_donations += 1
        self.points += points
        self.last_donation = request.date
        return entry

    def add_accepted_connection(self, entry: AcceptedConnection) -> bool:
        """Append ``entry`` unless one exists for the same counterpart and blood request."""
        if entry.key in self.accepted_connections:
            return False
        self.accepted_connections[entry.key] = entry
        return True
