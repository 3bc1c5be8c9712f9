import logging
from typing import Iterator, List, Optional

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from database import retry_on_stale
from directory import UserDirectory
from errors import Conflict, NotFound, PartialMatchError, StorageError, ValidationFailed
from schemas import BloodRequest, User, validation_messages

logger = logging.getLogger(__name__)

DIRECT_MATCH_POINTS = 10

REQUEST_FIELDS = ("blood_group", "date", "time", "phone", "district", "thana", "location")


def find_request(user: User, request_id: str) -> BloodRequest:
    blood_request = user.blood_requests.get(request_id)
    if blood_request is None:
        raise NotFound("Blood request not found", requestId=request_id)
    return blood_request


class BloodRequestRegistry:
    """Blood requests posted by recipients, stored under the recipient's document."""

    def __init__(self, directory: UserDirectory):
        self.directory = directory

    @retry_on_stale
    def create(self, recipient_id: str, fields: dict) -> BloodRequest:
        recipient = self.directory.get(recipient_id)
        try:
            blood_request = BloodRequest(
                **{name: fields.get(name, fields.get(to_camel(name))) for name in REQUEST_FIELDS},
                created_at=self.directory.now(),
            )
        except ValidationError as e:
            raise ValidationFailed("Invalid blood request", errors=validation_messages(e))
        recipient.blood_requests[blood_request.id] = blood_request
        self.directory.save(recipient)
        logger.info("User %s posted blood request %s (%s, %s)", recipient_id, blood_request.id,
                    blood_request.blood_group, blood_request.district)
        return blood_request

    def list_open(self, blood_group: Optional[str] = None, district: Optional[str] = None,
                  thana: Optional[str] = None) -> Iterator[dict]:
        """Un-accepted requests of every user matching the filters, newest first."""
        found = []
        for user in self.directory.find({"bloodRequests": {"$ne": {}}}):
            for blood_request in user.blood_requests.values():
                if blood_request.is_accepted:
                    continue
                if blood_group and blood_request.blood_group != blood_group:
                    continue
                if district and blood_request.district != district:
                    continue
                if thana and blood_request.thana != thana:
                    continue
                found.append((blood_request, user))
        found.sort(key=lambda pair: pair[0].created_at, reverse=True)
        for blood_request, user in found:
            yield {
                **blood_request.model_dump(by_alias=True),
                "requesterId": user.id,
                "requesterName": user.name,
                "requesterPhone": user.phone,
                "requesterEmail": user.email,
                "requesterBloodGroup": user.blood_group,
            }

    def list_for_user(self, user_id: str) -> List[BloodRequest]:
        return list(self.directory.get(user_id).blood_requests.values())

    @retry_on_stale
    def delete(self, recipient_id: str, request_id: str) -> str:
        recipient = self.directory.get(recipient_id)
        blood_request = find_request(recipient, request_id)
        if blood_request.is_accepted:
            raise Conflict(
                "Cannot delete an accepted blood request. Please contact support if needed.",
                requestId=request_id,
            )
        del recipient.blood_requests[request_id]
        self.directory.save(recipient)
        logger.info("User %s deleted blood request %s", recipient_id, request_id)
        return request_id

    def direct_accept(self, recipient_id: str, request_id: str, donor_id: str) -> dict:
        """Quick accept: a donor takes a request without a connection request.

        Skips the eligibility window entirely; the donor earns fewer points and
        stays available.
        """
        requester, donor, blood_request = self._claim(recipient_id, request_id, donor_id)
        try:
            donor = self._credit_donor(donor_id, requester, blood_request)
        except StorageError as e:
            logger.error(
                "Direct match half-applied: request %s of user %s is accepted by %s but the donor "
                "could not be credited (%s); reconcile manually",
                request_id, recipient_id, donor_id, e.message,
            )
            raise PartialMatchError(
                "Blood request accepted but the donor record could not be updated",
                requesterId=recipient_id, requestId=request_id, donorId=donor_id,
            )
        logger.info("Donor %s directly accepted blood request %s of user %s", donor_id, request_id, recipient_id)
        return {
            "request": blood_request,
            "donor": {
                "name": donor.name,
                "totalDonations": donor.total_donations,
                "points": donor.points,
            },
        }

    @retry_on_stale
    def _claim(self, recipient_id: str, request_id: str, donor_id: str):
        requester = self.directory.get(recipient_id, "Requester")
        donor = self.directory.get(donor_id, "Donor")
        blood_request = find_request(requester, request_id)
        if blood_request.is_accepted:
            raise Conflict("This request has already been accepted", requestId=request_id,
                           acceptedBy=blood_request.accepted_by)
        blood_request.mark_accepted(donor)
        self.directory.save(requester)
        return requester, donor, blood_request

    @retry_on_stale
    def _credit_donor(self, donor_id: str, requester: User, blood_request: BloodRequest) -> User:
        donor = self.directory.get(donor_id, "Donor")
        donor.record_donation(requester, blood_request, DIRECT_MATCH_POINTS)
        return self.directory.save(donor)
