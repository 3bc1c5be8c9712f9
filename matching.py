"""
Match acceptance.

Accepting a connection request touches two user documents: the donor (who owns
the connection request) and the requester (who owns the blood request). There
is no transaction spanning both, so the engine validates everything first, then
writes the donor and then the requester, each with a compare-and-swap on the
document version.

A lost race on the donor write re-runs the whole check, so the loser sees the
winner's result (``Conflict`` or ``Ineligible``). A lost race on the requester
write re-applies only the requester side. If that cannot be completed the donor
is already committed; the gap is logged for manual reconciliation and surfaced
as ``PartialMatchError``. If another donor took the blood request in between, the losing donor keeps its
committed side of the match until it is reconciled; nothing is rolled back.
"""

import logging
from typing import NamedTuple

from database import STALE_WRITE_RETRIES, retry_on_stale
from directory import UserDirectory
from eligibility import EligibilityEvaluator, next_eligibility_date
from errors import Conflict, Ineligible, NotFound, PartialMatchError, StaleWriteError, StorageError
from mediator import ensure_pending, find_connection
from registry import BloodRequestRegistry, find_request
from schemas import AcceptedConnection, BloodRequest, ConnectionRequest, User

logger = logging.getLogger(__name__)

MODERATED_MATCH_POINTS = 50


class Match(NamedTuple):
    donor: User
    requester: User
    connection_request: ConnectionRequest
    blood_request: BloodRequest

    def summary(self) -> dict:
        return {
            "connectionRequest": self.connection_request,
            "bloodRequest": {
                "id": self.blood_request.id,
                "isAccepted": self.blood_request.is_accepted,
                "acceptedBy": self.blood_request.accepted_by,
                "acceptedByName": self.blood_request.accepted_by_name,
            },
            "donor": {
                "name": self.donor.name,
                "totalDonations": self.donor.total_donations,
                "points": self.donor.points,
                "availability": self.donor.availability,
                "eligibilityDate": self.donor.eligibility_date,
            },
        }


class MatchAcceptanceEngine:

    def __init__(self, directory: UserDirectory, evaluator: EligibilityEvaluator,
                 registry: BloodRequestRegistry):
        self.directory = directory
        self.evaluator = evaluator
        self.registry = registry

    def accept(self, donor_id: str, connection_request_id: str) -> Match:
        match = self._commit_donor(donor_id, connection_request_id)
        requester = self._commit_requester(match)
        logger.info("Donor %s accepted connection request %s (blood request %s of user %s)",
                    donor_id, connection_request_id, match.blood_request.id, requester.id)
        return match._replace(requester=requester,
                              blood_request=requester.blood_requests[match.blood_request.id])

    def accept_direct(self, requester_id: str, request_id: str, donor_id: str) -> dict:
        """Quick accept without a connection request or eligibility check."""
        return self.registry.direct_accept(requester_id, request_id, donor_id)

    @retry_on_stale
    def _commit_donor(self, donor_id: str, connection_request_id: str) -> Match:
        donor = self.directory.get(donor_id)

        donor, eligibility = self.evaluator.check(donor)
        if not eligibility.is_eligible:
            raise Ineligible(eligibility.message, eligibility.days_remaining,
                             eligibilityDate=eligibility.eligibility_date)

        connection = find_connection(donor, connection_request_id)
        ensure_pending(connection)

        requester = self.directory.get(connection.requester_id, "Requester")
        blood_request = find_request(requester, connection.request_id)
        if blood_request.is_accepted:
            raise Conflict("This blood request has already been accepted by someone else",
                           requestId=blood_request.id, acceptedBy=blood_request.accepted_by)

        now = self.directory.now()
        connection.status = "accepted"
        donor.record_donation(requester, connection, MODERATED_MATCH_POINTS)
        donor.eligibility_date = next_eligibility_date(now)
        donor.availability = "Unavailable"
        donor.add_accepted_connection(AcceptedConnection(
            user_id=requester.id,
            name=requester.name,
            phone=requester.phone or "",
            blood_group=requester.blood_group,
            connection_request_id=connection.id,
            blood_request_id=blood_request.id,
            accepted_at=now,
        ))
        self.directory.save(donor)
        return Match(donor, requester, connection, blood_request)

    def _apply_requester_side(self, match: Match, requester: User) -> User:
        donor, connection = match.donor, match.connection_request
        blood_request = requester.blood_requests[match.blood_request.id]
        blood_request.mark_accepted(donor)
        requester.add_accepted_connection(AcceptedConnection(
            user_id=donor.id,
            name=donor.name,
            phone=donor.phone or "",
            blood_group=donor.blood_group,
            connection_request_id=connection.id,
            blood_request_id=blood_request.id,
            accepted_at=self.directory.now(),
        ))
        return self.directory.save(requester)

    def _commit_requester(self, match: Match) -> User:
        requester = match.requester
        for attempt in range(1, STALE_WRITE_RETRIES + 1):
            if attempt > 1:
                try:
                    requester = self.directory.get(requester.id, "Requester")
                except (NotFound, StorageError) as e:
                    self._report_gap(match, e.message)
                blood_request = requester.blood_requests.get(match.blood_request.id)
                if blood_request is None:
                    self._report_gap(match, "blood request disappeared")
                if blood_request.is_accepted and blood_request.accepted_by != match.donor.id:
                    self._report_gap(match, f"blood request taken by {blood_request.accepted_by}")
            try:
                return self._apply_requester_side(match, requester)
            except StaleWriteError as e:
                logger.warning("Requester %s changed during accept (attempt %d): %s",
                               requester.id, attempt, e.message)
            except StorageError as e:
                self._report_gap(match, e.message)
        self._report_gap(match, "requester kept changing")

    def _report_gap(self, match: Match, reason: str):
        logger.error(
            "Match half-applied, reconcile manually: donor %s committed connection request %s "
            "but requester %s was not updated for blood request %s (%s)",
            match.donor.id, match.connection_request.id, match.requester.id,
            match.blood_request.id, reason,
        )
        raise PartialMatchError(
            "Donor side of the match was saved but the requester could not be updated",
            donorId=match.donor.id,
            requesterId=match.requester.id,
            connectionRequestId=match.connection_request.id,
            bloodRequestId=match.blood_request.id,
        )
