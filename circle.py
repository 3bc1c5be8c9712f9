import logging
from typing import List

from database import retry_on_stale
from directory import UserDirectory
from errors import Conflict, NotFound, StorageError, ValidationFailed
from schemas import CircleEntry, User

logger = logging.getLogger(__name__)


class CircleManager:
    """Saved contacts, kept on both users' documents."""

    def __init__(self, directory: UserDirectory):
        self.directory = directory

    def _entry_for(self, other: User) -> CircleEntry:
        return CircleEntry(
            user_id=other.id,
            name=other.name,
            phone=other.phone or "",
            blood_group=other.blood_group,
            location=other.location or "",
            last_donation=other.last_donation or "",
            total_donations=other.total_donations,
            added_at=self.directory.now(),
        )

    @retry_on_stale
    def add(self, user_id: str, counterpart_id: str) -> User:
        if user_id == counterpart_id:
            raise ValidationFailed("You cannot add yourself to your circle")
        user = self.directory.get(user_id)
        counterpart = self.directory.get(counterpart_id, "Connection user")
        if counterpart_id in user.circle:
            raise Conflict("This user is already in your circle", userId=counterpart_id)
        user.circle[counterpart_id] = self._entry_for(counterpart)
        user = self.directory.save(user)
        self._mirror(counterpart_id, user, add=True)
        logger.info("User %s added %s to their circle", user_id, counterpart_id)
        return user

    @retry_on_stale
    def remove(self, user_id: str, counterpart_id: str) -> User:
        user = self.directory.get(user_id)
        if counterpart_id not in user.circle:
            raise NotFound("User not found in your circle", userId=counterpart_id)
        del user.circle[counterpart_id]
        user = self.directory.save(user)
        self._mirror(counterpart_id, user, add=False)
        logger.info("User %s removed %s from their circle", user_id, counterpart_id)
        return user

    def list(self, user_id: str) -> List[CircleEntry]:
        return list(self.directory.get(user_id).circle.values())

    def _mirror(self, counterpart_id: str, user: User, add: bool) -> None:
        # the reverse entry is a courtesy; the caller's own circle is already saved
        try:
            self._update_counterpart(counterpart_id, user, add)
        except (NotFound, StorageError) as e:
            logger.warning("Could not mirror circle change on %s: %s", counterpart_id, e.message)

    @retry_on_stale
    def _update_counterpart(self, counterpart_id: str, user: User, add: bool) -> None:
        counterpart = self.directory.get(counterpart_id)
        if add and user.id not in counterpart.circle:
            counterpart.circle[user.id] = self._entry_for(user)
        elif not add and user.id in counterpart.circle:
            del counterpart.circle[user.id]
        else:
            return
        self.directory.save(counterpart)
