import logging
from datetime import datetime, timedelta, timezone

import pytest

from errors import Conflict, Ineligible, NotFound, PartialMatchError, StorageError
from main import Services
from schemas import AcceptedConnection
from tests.conftest import BLOOD_REQUEST, InterleavingStore


@pytest.fixture
def proposed(services, posted):
    recipient, donor, blood_request = posted
    connection = services.mediator.propose(recipient.id, donor.id, blood_request.id)
    return recipient, donor, blood_request, connection


def test_accept_end_to_end(services, proposed, clock):
    recipient, donor, blood_request, connection = proposed
    match = services.engine.accept(donor.id, connection.id)

    assert match.blood_request.is_accepted
    assert match.connection_request.status == "accepted"

    stored_recipient = services.directory.get(recipient.id)
    stored_request = stored_recipient.blood_requests[blood_request.id]
    assert stored_request.is_accepted
    assert stored_request.accepted_by == donor.id
    assert stored_request.accepted_by_name == "Karim"

    stored_donor = services.directory.get(donor.id)
    assert stored_donor.connection_requests[connection.id].status == "accepted"
    assert stored_donor.total_donations == 1
    assert stored_donor.points == 50
    assert stored_donor.last_donation == "2025-02-01"
    assert stored_donor.eligibility_date == datetime(2025, 5, 15, 9, 30, tzinfo=timezone.utc)
    assert stored_donor.availability == "Unavailable"
    [history] = stored_donor.donation_history
    assert (history.name, history.blood_group, history.recipient_id) == ("Rahim", "O+", recipient.id)

    [donor_side] = stored_donor.accepted_connections.values()
    assert donor_side.user_id == recipient.id
    assert donor_side.name == "Rahim"
    assert donor_side.connection_request_id == connection.id
    assert donor_side.blood_request_id == blood_request.id
    assert donor_side.accepted_at == clock.now()

    [recipient_side] = stored_recipient.accepted_connections.values()
    assert recipient_side.user_id == donor.id
    assert recipient_side.name == "Karim"
    assert recipient_side.phone == donor.phone
    assert recipient_side.blood_request_id == blood_request.id


def test_accept_while_ineligible_changes_nothing(services, proposed, update_user, clock):
    recipient, donor, blood_request, connection = proposed
    update_user(donor.id, eligibility_date=clock.now() + timedelta(days=10), availability="Unavailable")
    before = (services.directory.get(donor.id), services.directory.get(recipient.id))

    with pytest.raises(Ineligible) as excinfo:
        services.engine.accept(donor.id, connection.id)

    assert excinfo.value.days_remaining == 10
    assert excinfo.value.details["daysRemaining"] == 10
    assert (services.directory.get(donor.id), services.directory.get(recipient.id)) == before


def test_accept_after_window_lapses(services, proposed, update_user, clock):
    recipient, donor, blood_request, connection = proposed
    update_user(donor.id, eligibility_date=clock.now() - timedelta(days=1), availability="Unavailable",
                total_donations=3, points=150)

    services.engine.accept(donor.id, connection.id)
    stored = services.directory.get(donor.id)
    assert stored.total_donations == 4
    assert stored.points == 200
    assert stored.availability == "Unavailable"
    assert stored.eligibility_date > clock.now()


def test_accept_unknown_donor(services, proposed):
    with pytest.raises(NotFound, match="User"):
        services.engine.accept("65a000000000000000000000", proposed[3].id)


def test_accept_unknown_connection(services, proposed):
    _, donor, _, _ = proposed
    with pytest.raises(NotFound, match="Connection request"):
        services.engine.accept(donor.id, "65a000000000000000000000")


def test_accept_twice_conflicts_and_counts_once(services, proposed):
    recipient, donor, blood_request, connection = proposed
    services.engine.accept(donor.id, connection.id)

    # the donor is now in the cooldown window, which is checked first
    with pytest.raises(Ineligible):
        services.engine.accept(donor.id, connection.id)

    stored = services.directory.get(donor.id)
    assert stored.total_donations == 1
    assert len(stored.accepted_connections) == 1
    assert len(services.directory.get(recipient.id).accepted_connections) == 1


def test_accept_resolved_request_echoes_status(services, proposed, update_user):
    _, donor, _, connection = proposed
    services.engine.accept(donor.id, connection.id)
    update_user(donor.id, eligibility_date=None, availability="Available")

    with pytest.raises(Conflict) as excinfo:
        services.engine.accept(donor.id, connection.id)
    assert excinfo.value.details["status"] == "accepted"
    assert services.directory.get(donor.id).total_donations == 1


def test_concurrent_accept_of_same_connection(services, proposed, collection, clock):
    recipient, donor, blood_request, connection = proposed
    rival = Services(collection, clock)
    rival_results = []

    services.directory.store = InterleavingStore(
        collection, lambda: rival_results.append(rival.engine.accept(donor.id, connection.id))
    )
    with pytest.raises((Conflict, Ineligible)):
        services.engine.accept(donor.id, connection.id)

    assert len(rival_results) == 1
    stored = services.directory.get(donor.id)
    assert stored.total_donations == 1
    assert stored.points == 50
    assert len(stored.donation_history) == 1
    assert len(stored.accepted_connections) == 1
    assert len(services.directory.get(recipient.id).accepted_connections) == 1


def test_first_acceptance_wins_between_two_donors(services, posted, register):
    recipient, first, blood_request = posted
    second = register("Nadia")
    first_connection = services.mediator.propose(recipient.id, first.id, blood_request.id)
    second_connection = services.mediator.propose(recipient.id, second.id, blood_request.id)

    services.engine.accept(first.id, first_connection.id)
    with pytest.raises(Conflict, match="already been accepted by someone else"):
        services.engine.accept(second.id, second_connection.id)

    stored_second = services.directory.get(second.id)
    assert stored_second.connection_requests[second_connection.id].status == "pending"
    assert stored_second.total_donations == 0
    assert stored_second.accepted_connections == {}
    stored_request = services.directory.get(recipient.id).blood_requests[blood_request.id]
    assert stored_request.accepted_by == first.id


def test_requester_write_retried_after_unrelated_change(services, proposed, collection, clock):
    recipient, donor, blood_request, connection = proposed
    rival = Services(collection, clock)

    # the requester posts another request between our reads and the requester write
    services.directory.store = InterleavingStore(
        collection, lambda: rival.registry.create(recipient.id, {**BLOOD_REQUEST, "bloodGroup": "B+"}), on_call=2
    )
    services.engine.accept(donor.id, connection.id)

    stored = services.directory.get(recipient.id)
    assert len(stored.blood_requests) == 2
    assert stored.blood_requests[blood_request.id].accepted_by == donor.id
    assert len(stored.accepted_connections) == 1


def test_requester_taken_between_writes_is_reported(services, posted, register, collection, clock, caplog):
    recipient, first, blood_request = posted
    second = register("Nadia")
    first_connection = services.mediator.propose(recipient.id, first.id, blood_request.id)
    second_connection = services.mediator.propose(recipient.id, second.id, blood_request.id)
    rival = Services(collection, clock)

    services.directory.store = InterleavingStore(
        collection, lambda: rival.engine.accept(second.id, second_connection.id), on_call=2
    )
    with caplog.at_level(logging.ERROR, logger="matching"):
        with pytest.raises(PartialMatchError) as excinfo:
            services.engine.accept(first.id, first_connection.id)

    assert excinfo.value.status_class == "server-error"
    assert excinfo.value.details["bloodRequestId"] == blood_request.id
    assert "reconcile manually" in caplog.text
    # the donor side stays committed; the request belongs to the rival
    assert services.directory.get(first.id).total_donations == 1
    assert services.directory.get(recipient.id).blood_requests[blood_request.id].accepted_by == second.id


class FailingSecondWrite(InterleavingStore):
    def save(self, user):
        self.saves += 1
        if self.saves == 2:
            raise StorageError("Database error during save", retryable=True)
        return super(InterleavingStore, self).save(user)


def test_storage_failure_on_requester_write(services, proposed, collection):
    recipient, donor, blood_request, connection = proposed
    services.directory.store = FailingSecondWrite(collection, hook=None)

    with pytest.raises(PartialMatchError):
        services.engine.accept(donor.id, connection.id)
    assert services.directory.get(donor.id).connection_requests[connection.id].status == "accepted"
    assert not services.directory.get(recipient.id).blood_requests[blood_request.id].is_accepted


def test_sibling_proposals_stay_pending(services, posted, register):
    recipient, first, blood_request = posted
    second = register("Nadia")
    first_connection = services.mediator.propose(recipient.id, first.id, blood_request.id)
    second_connection = services.mediator.propose(recipient.id, second.id, blood_request.id)

    services.engine.accept(first.id, first_connection.id)
    assert [c.id for c in services.mediator.list(second.id, "pending")] == [second_connection.id]


def test_accepted_connection_insert_is_idempotent(services, register, clock):
    user = register("Rahim")
    entry = dict(user_id="65a000000000000000000001", name="Karim", connection_request_id="c1",
                 blood_request_id="b1", accepted_at=clock.now())

    assert user.add_accepted_connection(AcceptedConnection(**entry))
    assert not user.add_accepted_connection(AcceptedConnection(**entry, phone="01700000000"))
    assert user.add_accepted_connection(AcceptedConnection(**{**entry, "blood_request_id": "b2"}))
    assert len(user.accepted_connections) == 2


def test_accept_direct_is_separate_path(services, posted):
    recipient, donor, blood_request = posted
    result = services.engine.accept_direct(recipient.id, blood_request.id, donor.id)

    assert result["donor"]["points"] == 10
    stored = services.directory.get(donor.id)
    assert stored.availability == "Available"
    assert stored.connection_requests == {}


def test_summary_payload(services, proposed):
    _, donor, blood_request, connection = proposed
    summary = services.engine.accept(donor.id, connection.id).summary()

    assert summary["bloodRequest"] == {
        "id": blood_request.id,
        "isAccepted": True,
        "acceptedBy": donor.id,
        "acceptedByName": "Karim",
    }
    assert summary["donor"]["points"] == 50
    assert summary["donor"]["availability"] == "Unavailable"
