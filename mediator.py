import logging
from typing import List, Optional

from database import retry_on_stale
from directory import UserDirectory
from errors import Conflict, NotFound
from registry import find_request
from schemas import ConnectionRequest, ConnectionStatus, User

logger = logging.getLogger(__name__)


def find_connection(donor: User, connection_request_id: str) -> ConnectionRequest:
    connection = donor.connection_requests.get(connection_request_id)
    if connection is None:
        raise NotFound("Connection request not found", connectionRequestId=connection_request_id)
    return connection


def ensure_pending(connection: ConnectionRequest) -> None:
    if connection.status != "pending":
        raise Conflict(f"This request has already been {connection.status}",
                       connectionRequestId=connection.id, status=connection.status)


class ConnectionRequestMediator:
    """Proposals from a recipient to one donor for one blood request, stored under the donor."""

    def __init__(self, directory: UserDirectory):
        self.directory = directory

    @retry_on_stale
    def propose(self, requester_id: str, donor_id: str, request_id: str,
                snapshot: Optional[dict] = None) -> ConnectionRequest:
        """Send ``donor_id`` a pending connection request for ``request_id``.

        The blood request fields are copied from the stored request; ``snapshot``
        may only override how the requester is presented (``requesterName``,
        ``requesterPhone``).
        """
        requester = self.directory.get(requester_id, "Requester")
        donor = self.directory.get(donor_id, "Donor")
        blood_request = find_request(requester, request_id)
        if blood_request.is_accepted:
            raise Conflict("This blood request has already been accepted", requestId=request_id)

        for existing in donor.connection_requests.values():
            if (existing.requester_id == requester_id and existing.request_id == request_id
                    and existing.status == "pending"):
                raise Conflict("You have already sent a connection request for this blood request",
                               connectionRequestId=existing.id)

        snapshot = snapshot or {}
        connection = ConnectionRequest(
            requester_id=requester_id,
            requester_name=snapshot.get("requesterName") or requester.name,
            requester_phone=snapshot.get("requesterPhone") or requester.phone or "",
            request_id=request_id,
            blood_group=blood_request.blood_group,
            date=blood_request.date,
            time=blood_request.time,
            location=blood_request.location,
            district=blood_request.district,
            thana=blood_request.thana,
            phone=blood_request.phone,
            created_at=self.directory.now(),
        )
        donor.connection_requests[connection.id] = connection
        self.directory.save(donor)
        logger.info("User %s asked donor %s to accept blood request %s (connection %s)",
                    requester_id, donor_id, request_id, connection.id)
        return connection

    def list(self, user_id: str, status: Optional[ConnectionStatus] = None) -> List[ConnectionRequest]:
        user = self.directory.get(user_id)
        requests = [c for c in user.connection_requests.values() if status is None or c.status == status]
        requests.sort(key=lambda c: c.created_at, reverse=True)
        return requests

    @retry_on_stale
    def reject(self, donor_id: str, connection_request_id: str) -> ConnectionRequest:
        donor = self.directory.get(donor_id)
        connection = find_connection(donor, connection_request_id)
        ensure_pending(connection)
        connection.status = "rejected"
        self.directory.save(donor)
        logger.info("Donor %s rejected connection request %s", donor_id, connection_request_id)
        return connection
