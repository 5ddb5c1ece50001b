"""
MongoDB access for HackHost.

The client is created on first use so importing the app never opens a
connection. Collections are addressed by name through `collection()`.
"""
import logging
from datetime import datetime, timezone

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import Config

logger = logging.getLogger(__name__)

_client = None
_db = None


def get_db():
    global _client, _db
    if _db is None:
        _client = MongoClient(Config.MONGO_URI, serverSelectionTimeoutMS=5000)
        _db = _client[Config.MONGO_DB_NAME]
        logger.info("MongoDB client created for database=%s", Config.MONGO_DB_NAME)
    return _db


def collection(name):
    return get_db()[name]


def ensure_indexes():
    """Create the unique and lookup indexes the routes rely on."""
    db = get_db()
    db["subscribers"].create_index([("email", ASCENDING)], unique=True)
    db["users"].create_index([("email", ASCENDING)], unique=True)
    db["evaluations"].create_index(
        [("event", ASCENDING), ("team", ASCENDING), ("judge", ASCENDING)], unique=True
    )
    db["reviews"].create_index([("submission", ASCENDING), ("judge", ASCENDING)], unique=True)
    db["teams"].create_index([("name", ASCENDING), ("event", ASCENDING)], unique=True)
    db["invites"].create_index([("token", ASCENDING)], unique=True)
    db["invites"].create_index([("recipientEmail", ASCENDING), ("status", ASCENDING)])
    db["notifications"].create_index([("recipientUserIds", ASCENDING), ("createdAt", DESCENDING)])
    db["registrations"].create_index([("event", ASCENDING)])
    db["judge_assignments"].create_index([("judge", ASCENDING), ("event", ASCENDING)], unique=True)
    db["email_verifications"].create_index([("email", ASCENDING)])
    logger.info("MongoDB indexes created/verified")


def utcnow():
    return datetime.now(timezone.utc)


def parse_object_id(value):
    """Return an ObjectId for `value`, or None when it is not a valid id."""
    if isinstance(value, ObjectId):
        return value
    if value and ObjectId.is_valid(str(value)):
        return ObjectId(str(value))
    return None


def parse_datetime(value):
    """Parse an ISO-8601 string (a trailing Z is accepted) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def as_utc(value):
    # Mongo hands back naive datetimes that are UTC
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def serialize(value):
    """Make a Mongo document JSON safe: ObjectIds become strings, datetimes ISO-8601."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return as_utc(value).isoformat().replace("+00:00", "Z")
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value
