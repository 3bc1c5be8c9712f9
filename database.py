"""
MongoDB access

The connection is configured from the environment (optionally via a .env file):
- DATABASE_URL / DATABASE_NAME select the server and database; when either is
  missing ``db`` stays None and the API reports the database as unavailable.
- DATABASE_TIMEOUT_MS bounds server selection, connects and socket reads so no
  call hangs.
- STALE_WRITE_RETRIES bounds optimistic-concurrency attempts (at least one).
"""

import logging
import os
from functools import wraps
from typing import Iterator, Optional

from bson import ObjectId
from dotenv import load_dotenv
from pymongo import MongoClient
from pymongo.errors import AutoReconnect, DuplicateKeyError, NetworkTimeout, PyMongoError

from errors import Conflict, StaleWriteError, StorageError, ValidationFailed
from schemas import User

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
DATABASE_TIMEOUT_MS = int(os.getenv("DATABASE_TIMEOUT_MS", 5000))


def _at_least_one(name: str, default: int) -> int:
    return max(1, int(os.getenv(name, default)))


STALE_WRITE_RETRIES = _at_least_one("STALE_WRITE_RETRIES", 3)

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(
        DATABASE_URL,
        tz_aware=True,
        serverSelectionTimeoutMS=DATABASE_TIMEOUT_MS,
        connectTimeoutMS=DATABASE_TIMEOUT_MS,
        socketTimeoutMS=DATABASE_TIMEOUT_MS,
    )
    db = _client[DATABASE_NAME]


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise ValidationFailed("Invalid id format", id=id_str)


def _storage_error(action: str, exc: PyMongoError) -> StorageError:
    retryable = isinstance(exc, (AutoReconnect, NetworkTimeout))
    logger.error("MongoDB %s failed: %s", action, exc)
    return StorageError(f"Database error during {action}", retryable=retryable)


def retry_on_stale(fn):
    """Re-run ``fn`` from scratch when its final write loses a version race."""
    @wraps(fn)
    def wrapper(*args, **kwargs):
        for attempt in range(1, STALE_WRITE_RETRIES + 1):
            try:
                return fn(*args, **kwargs)
            except StaleWriteError as e:
                if attempt == STALE_WRITE_RETRIES:
                    raise
                logger.warning("%s lost a write race (attempt %d): %s", fn.__name__, attempt, e)
    return wrapper


class UserStore:
    """User documents in a pymongo collection, written with compare-and-swap on ``version``."""

    def __init__(self, collection):
        self.collection = collection

    @staticmethod
    def to_document(user: User) -> dict:
        doc = user.model_dump(by_alias=True, exclude={"id"})
        if user.id is not None:
            doc["_id"] = oid(user.id)
        return doc

    @staticmethod
    def from_document(doc: dict) -> User:
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return User.model_validate(doc)

    def find_by_id(self, user_id: str) -> Optional[User]:
        _id = oid(user_id)
        try:
            doc = self.collection.find_one({"_id": _id})
        except PyMongoError as e:
            raise _storage_error("find", e)
        return self.from_document(doc) if doc else None

    def find_one(self, query: dict) -> Optional[User]:
        try:
            doc = self.collection.find_one(query)
        except PyMongoError as e:
            raise _storage_error("find", e)
        return self.from_document(doc) if doc else None

    def find(self, query: Optional[dict] = None, sort=None) -> Iterator[User]:
        try:
            cursor = self.collection.find(query or {})
            if sort:
                cursor = cursor.sort(sort)
            for doc in cursor:
                yield self.from_document(doc)
        except PyMongoError as e:
            raise _storage_error("find", e)

    def insert(self, user: User) -> User:
        user.version = 0
        doc = self.to_document(user)
        try:
            result = self.collection.insert_one(doc)
        except DuplicateKeyError:
            raise Conflict("User already exists", userId=user.id)
        except PyMongoError as e:
            raise _storage_error("insert", e)
        user.id = str(result.inserted_id)
        return user

    def save(self, user: User) -> User:
        """Replace the stored document if nobody wrote it since ``user`` was read."""
        doc = self.to_document(user)
        doc["version"] = user.version + 1
        try:
            result = self.collection.replace_one({"_id": doc["_id"], "version": user.version}, doc)
        except PyMongoError as e:
            raise _storage_error("save", e)
        if result.matched_count == 0:
            raise StaleWriteError("User changed since it was read", userId=user.id)
        user.version += 1
        return user
