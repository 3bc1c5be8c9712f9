import itertools
from datetime import datetime, timedelta, timezone

import mongomock
import pytest

from database import UserStore
from directory import Clock
from main import Services

NOW = datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc)

BLOOD_REQUEST = {
    "bloodGroup": "O+",
    "date": "2025-02-01",
    "time": "10:00",
    "phone": "01711111111",
    "district": "Dhaka",
    "thana": "Dhanmondi",
    "location": "Square Hospital",
}


class FrozenClock(Clock):
    def __init__(self, current):
        self.current = current

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


class InterleavingStore(UserStore):
    """Runs ``hook`` right before the ``on_call``-th save, simulating a concurrent writer."""

    def __init__(self, collection, hook, on_call=1):
        super().__init__(collection)
        self.hook = hook
        self.on_call = on_call
        self.saves = 0

    def save(self, user):
        self.saves += 1
        if self.saves == self.on_call and self.hook is not None:
            hook, self.hook = self.hook, None
            hook()
        return super().save(user)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def collection():
    return mongomock.MongoClient().db.user


@pytest.fixture
def services(collection, clock):
    return Services(collection, clock)


@pytest.fixture
def register(services):
    counter = itertools.count(1)

    def _register(name, blood_group="O+", **extra):
        n = next(counter)
        profile = {
            "name": name,
            "email": f"user{n}@mail.com",
            "phone": f"0171{n:07d}",
            "bloodGroup": blood_group,
            "district": "Dhaka",
            "thana": "Dhanmondi",
            **extra,
        }
        return services.directory.register(profile)

    return _register


@pytest.fixture
def update_user(services):
    def _update(user_id, **changes):
        user = services.directory.get(user_id)
        for field, value in changes.items():
            setattr(user, field, value)
        return services.directory.save(user)

    return _update


@pytest.fixture
def posted(services, register):
    """A recipient with one open O+ request in Dhaka and an eligible donor."""
    recipient = register("Rahim")
    donor = register("Karim")
    blood_request = services.registry.create(recipient.id, BLOOD_REQUEST)
    return recipient, donor, blood_request
