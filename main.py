import logging
import os
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import EmailStr, Field

from circle import CircleManager
from database import UserStore, db
from directory import Clock, UserDirectory
from eligibility import EligibilityEvaluator
from errors import ServiceError, StorageError
from matching import MatchAcceptanceEngine
from mediator import ConnectionRequestMediator
from registry import BloodRequestRegistry
from schemas import Availability, BloodGroup, ConnectionStatus, Document, LocationGeo

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Blood Donation Matching API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Services:
    """The matching core wired to one user collection."""

    def __init__(self, collection, clock: Optional[Clock] = None):
        self.directory = UserDirectory(UserStore(collection), clock)
        self.eligibility = EligibilityEvaluator(self.directory)
        self.registry = BloodRequestRegistry(self.directory)
        self.mediator = ConnectionRequestMediator(self.directory)
        self.engine = MatchAcceptanceEngine(self.directory, self.eligibility, self.registry)
        self.circle = CircleManager(self.directory)


_services = Services(db["user"]) if db is not None else None


def get_services() -> Services:
    if _services is None:
        raise StorageError("Database not available")
    return _services


@app.exception_handler(ServiceError)
def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


def dump(model) -> dict:
    return model.model_dump(by_alias=True, mode="json")


# ---------------- Request bodies -----------------

class UserIn(Document):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    age: Optional[int] = None
    weight: Optional[float] = None
    address: Optional[str] = None
    district: Optional[str] = None
    thana: Optional[str] = None
    location: Optional[str] = None
    location_geo: Optional[LocationGeo] = None
    blood_group: BloodGroup
    availability: Availability = "Available"
    health_status: Optional[str] = None


class PhoneLookup(Document):
    phone: str = ""


class AvailabilityIn(Document):
    availability: Availability


class LocationIn(Document):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None
    is_enabled: Optional[bool] = None


class BloodRequestIn(Document):
    user_id: str
    blood_group: BloodGroup
    date: str = Field(..., min_length=1)
    time: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    district: str = Field(..., min_length=1)
    thana: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)


class DirectAcceptIn(Document):
    donor_id: str


class ConnectionRequestIn(Document):
    requester_id: str
    donor_id: str
    request_id: str
    requester_name: Optional[str] = None
    requester_phone: Optional[str] = None


class CircleIn(Document):
    connection_user_id: str


# ---------------- Users -----------------

@app.post("/users", response_model=dict)
def register_user(payload: UserIn, services: Services = Depends(get_services)):
    user = services.directory.register(payload.model_dump(exclude_unset=True))
    return {"user": dump(user)}


@app.post("/users/search-by-phone", response_model=dict)
def search_user_by_phone(payload: PhoneLookup, services: Services = Depends(get_services)):
    return {"user": dump(services.directory.find_by_phone(payload.phone))}


@app.get("/users/with-location", response_model=dict)
def users_with_location(bloodGroup: Optional[str] = None, services: Services = Depends(get_services)):
    users = services.directory.users_with_location(bloodGroup)
    return {"users": users, "count": len(users)}


@app.get("/users/{user_id}", response_model=dict)
def get_user(user_id: str, services: Services = Depends(get_services)):
    return {"user": dump(services.directory.get(user_id))}


@app.put("/users/{user_id}/availability", response_model=dict)
def set_availability(user_id: str, payload: AvailabilityIn, services: Services = Depends(get_services)):
    user = services.directory.set_availability(user_id, payload.availability)
    return {"availability": user.availability}


@app.put("/users/{user_id}/location", response_model=dict)
def update_location(user_id: str, payload: LocationIn, services: Services = Depends(get_services)):
    user = services.directory.update_location(user_id, payload.model_dump(exclude_unset=True))
    enabled = user.location_geo.is_enabled
    return {
        "message": "Location updated successfully" if enabled else "Location sharing disabled",
        "locationGeo": dump(user.location_geo),
    }


@app.get("/donors/available", response_model=dict)
def available_donors(bloodGroup: Optional[str] = None, district: Optional[str] = None,
                     thana: Optional[str] = None, services: Services = Depends(get_services)):
    donors = services.directory.available_donors(bloodGroup, district, thana)
    return {"donors": [dump(d) for d in donors], "count": len(donors)}


@app.get("/users/{user_id}/donation-history", response_model=dict)
def donation_history(user_id: str, services: Services = Depends(get_services)):
    return jsonable_encoder(services.directory.donation_history(user_id))


@app.get("/users/{user_id}/eligibility", response_model=dict)
def eligibility_status(user_id: str, services: Services = Depends(get_services)):
    return jsonable_encoder(services.eligibility.status(user_id))


# ---------------- Blood requests -----------------

@app.post("/blood-requests", response_model=dict)
def create_blood_request(payload: BloodRequestIn, services: Services = Depends(get_services)):
    fields = payload.model_dump(exclude={"user_id"})
    blood_request = services.registry.create(payload.user_id, fields)
    return {"request": dump(blood_request)}


@app.get("/blood-requests", response_model=dict)
def list_blood_requests(bloodGroup: Optional[str] = None, district: Optional[str] = None,
                        thana: Optional[str] = None, services: Services = Depends(get_services)):
    requests = list(services.registry.list_open(bloodGroup, district, thana))
    return {"requests": jsonable_encoder(requests), "count": len(requests)}


@app.get("/users/{user_id}/blood-requests", response_model=dict)
def my_blood_requests(user_id: str, services: Services = Depends(get_services)):
    requests = services.registry.list_for_user(user_id)
    return {"bloodRequests": [dump(r) for r in requests], "count": len(requests)}


@app.delete("/users/{user_id}/blood-requests/{request_id}", response_model=dict)
def delete_blood_request(user_id: str, request_id: str, services: Services = Depends(get_services)):
    return {"deletedRequestId": services.registry.delete(user_id, request_id)}


@app.post("/users/{user_id}/blood-requests/{request_id}/accept", response_model=dict)
def accept_blood_request(user_id: str, request_id: str, payload: DirectAcceptIn,
                         services: Services = Depends(get_services)):
    result = services.engine.accept_direct(user_id, request_id, payload.donor_id)
    return {"request": dump(result["request"]), "donor": result["donor"]}


# ---------------- Connection requests -----------------

@app.post("/connection-requests", response_model=dict)
def send_connection_request(payload: ConnectionRequestIn, services: Services = Depends(get_services)):
    snapshot = payload.model_dump(by_alias=True, include={"requester_name", "requester_phone"})
    connection = services.mediator.propose(payload.requester_id, payload.donor_id, payload.request_id, snapshot)
    return {"connectionRequest": dump(connection)}


@app.get("/users/{user_id}/connection-requests", response_model=dict)
def list_connection_requests(user_id: str, status: Optional[ConnectionStatus] = None,
                             services: Services = Depends(get_services)):
    requests = services.mediator.list(user_id, status)
    return {"connectionRequests": [dump(r) for r in requests], "count": len(requests)}


@app.post("/users/{user_id}/connection-requests/{connection_id}/accept", response_model=dict)
def accept_connection_request(user_id: str, connection_id: str, services: Services = Depends(get_services)):
    match = services.engine.accept(user_id, connection_id)
    return jsonable_encoder(match.summary(), by_alias=True)


@app.post("/users/{user_id}/connection-requests/{connection_id}/reject", response_model=dict)
def reject_connection_request(user_id: str, connection_id: str, services: Services = Depends(get_services)):
    connection = services.mediator.reject(user_id, connection_id)
    return {"connectionRequest": {"id": connection.id, "status": connection.status}}


# ---------------- Circle -----------------

@app.get("/users/{user_id}/circle", response_model=dict)
def get_circle(user_id: str, services: Services = Depends(get_services)):
    entries = services.circle.list(user_id)
    return {"circle": [dump(e) for e in entries], "count": len(entries)}


@app.post("/users/{user_id}/circle", response_model=dict)
def add_to_circle(user_id: str, payload: CircleIn, services: Services = Depends(get_services)):
    user = services.circle.add(user_id, payload.connection_user_id)
    return {"circle": [dump(e) for e in user.circle.values()]}


@app.delete("/users/{user_id}/circle/{counterpart_id}", response_model=dict)
def remove_from_circle(user_id: str, counterpart_id: str, services: Services = Depends(get_services)):
    user = services.circle.remove(user_id, counterpart_id)
    return {"circle": [dump(e) for e in user.circle.values()]}


# ---------------- Health -----------------

@app.get("/")
def read_root():
    return {"message": "Blood Donation Matching API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["database_url"] = "✅ Set"
            response["database_name"] = getattr(db, 'name', '✅ Connected')
            response["connection_status"] = "Connected"
            collections = db.list_collection_names()
            response["collections"] = collections[:10]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
