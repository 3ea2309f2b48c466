"""
Document store for SpendSense.

Profiles live in the "user" collection (one document per identity, the same
document that carries the login fields). Expenses live in the "expense"
collection with a user_id owner field. Callers address both through logical
paths, users/{uid} and users/{uid}/expenses/{id}, which is also what the
security rules and the change feed are keyed on.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

import config

logger = logging.getLogger("spendsense.database")

PROFILE_FIELDS = ("display_name", "income", "currency", "savings_goal", "bio", "photo_url")


def _connect() -> Optional[Database]:
    if not config.DATABASE_URL:
        logger.warning("DATABASE_URL is not set; document store disabled")
        return None
    client = MongoClient(config.DATABASE_URL)
    return client[config.DATABASE_NAME]


db = _connect()


# Paths
def user_path(uid: str) -> str:
    return f"users/{uid}"


def expenses_path(uid: str) -> str:
    return f"users/{uid}/expenses"


def expense_path(uid: str, expense_id: str) -> str:
    return f"users/{uid}/expenses/{expense_id}"


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


# Security rules
class AccessDenied(PermissionError):
    def __init__(self, path: str, operation: str):
        super().__init__(f"{operation} on {path} denied")
        self.path = path
        self.operation = operation


Rules = Callable[[Optional[str], str, str], bool]


def owner_only(actor: Optional[str], path: str, operation: str) -> bool:
    """Everything under users/{uid} is readable and writable by uid alone."""
    parts = path.split("/")
    return actor is not None and len(parts) >= 2 and parts[0] == "users" and parts[1] == actor


# Change feed
class Subscription:
    """Cancellation handle returned by every subscribe call."""

    def __init__(self, feed: Optional["ChangeFeed"], path: str, refresh: Callable[[], None]):
        self._feed = feed
        self.path = path
        self._refresh = refresh
        self.active = True

    def fire(self):
        if self.active:
            self._refresh()

    def cancel(self):
        if not self.active:
            return
        self.active = False
        if self._feed is not None:
            self._feed.remove(self)


class ChangeFeed:
    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def add(self, subscription: Subscription):
        with self._lock:
            self._subscriptions.setdefault(subscription.path, []).append(subscription)

    def remove(self, subscription: Subscription):
        with self._lock:
            subs = self._subscriptions.get(subscription.path, [])
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                self._subscriptions.pop(subscription.path, None)

    def listener_count(self, path: Optional[str] = None) -> int:
        with self._lock:
            if path is not None:
                return len(self._subscriptions.get(path, []))
            return sum(len(s) for s in self._subscriptions.values())

    def notify(self, path: str):
        with self._lock:
            subs = list(self._subscriptions.get(path, []))
        for sub in subs:
            try:
                sub.fire()
            except Exception:
                logger.exception("Subscriber on %s failed", path)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentStore:
    def __init__(self, database: Database, rules: Rules = owner_only, clock: Callable[[], datetime] = _utcnow):
        self.database = database
        self.rules = rules
        self.clock = clock
        self.feed = ChangeFeed()

    @property
    def users(self):
        return self.database["user"]

    @property
    def expenses(self):
        return self.database["expense"]

    def _check(self, actor: Optional[str], path: str, operation: str):
        if not self.rules(actor, path, operation):
            raise AccessDenied(path, operation)

    # ----- identity records (provider side, not subject to rules) -----
    def find_user_by_email(self, email: str) -> Optional[dict]:
        return self.users.find_one({"email": email.lower()})

    def find_user(self, uid: str) -> Optional[dict]:
        oid = to_object_id(uid)
        return self.users.find_one({"_id": oid}) if oid else None

    def create_user(self, data: dict) -> str:
        doc = dict(data)
        doc["email"] = doc["email"].lower()
        doc.setdefault("created_at", self.clock())
        return str(self.users.insert_one(doc).inserted_id)

    def update_user(self, uid: str, fields: dict) -> None:
        self.users.update_one({"_id": to_object_id(uid)}, {"$set": fields})
        self.feed.notify(user_path(uid))

    def bump_token_version(self, uid: str) -> None:
        self.users.update_one({"_id": to_object_id(uid)}, {"$inc": {"token_version": 1}})

    # ----- profile: users/{uid} -----
    def get_profile(self, actor: Optional[str], uid: str) -> Optional[dict]:
        self._check(actor, user_path(uid), "get")
        doc = self.find_user(uid)
        if doc is None:
            return None
        profile = {k: doc[k] for k in PROFILE_FIELDS if k in doc}
        profile["uid"] = uid
        profile["email"] = doc.get("email")
        return profile

    def set_profile(self, actor: Optional[str], uid: str, data: dict) -> None:
        """Merge the given profile fields into users/{uid}."""
        self._check(actor, user_path(uid), "update")
        fields = {k: v for k, v in data.items() if k in PROFILE_FIELDS}
        self.users.update_one({"_id": to_object_id(uid)}, {"$set": fields})
        self.feed.notify(user_path(uid))

    # ----- expenses: users/{uid}/expenses -----
    def list_expenses(self, actor: Optional[str], uid: str) -> List[dict]:
        self._check(actor, expenses_path(uid), "list")
        cursor = self.expenses.find({"user_id": uid}).sort("created_at", DESCENDING)
        return [_expense_out(doc) for doc in cursor]

    def add_expense(self, actor: Optional[str], uid: str, data: dict) -> dict:
        self._check(actor, expenses_path(uid), "create")
        doc = dict(data)
        doc["user_id"] = uid
        doc["created_at"] = self.clock()
        doc["_id"] = self.expenses.insert_one(doc).inserted_id
        self.feed.notify(expenses_path(uid))
        return _expense_out(doc)

    def update_expense(self, actor: Optional[str], uid: str, expense_id: str, data: dict) -> Optional[dict]:
        self._check(actor, expense_path(uid, expense_id), "update")
        oid = to_object_id(expense_id)
        if oid is None:
            return None
        doc = self.expenses.find_one_and_update(
            {"_id": oid, "user_id": uid},
            {"$set": data},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            return None
        self.feed.notify(expenses_path(uid))
        return _expense_out(doc)

    def delete_expense(self, actor: Optional[str], uid: str, expense_id: str) -> bool:
        self._check(actor, expense_path(uid, expense_id), "delete")
        oid = to_object_id(expense_id)
        if oid is None:
            return False
        result = self.expenses.delete_one({"_id": oid, "user_id": uid})
        if result.deleted_count:
            self.feed.notify(expenses_path(uid))
        return bool(result.deleted_count)

    # ----- live subscriptions -----
    def subscribe_profile(self, actor, uid, on_next, on_error=None) -> Subscription:
        return self._subscribe(user_path(uid), lambda: self.get_profile(actor, uid), on_next, on_error)

    def subscribe_expenses(self, actor, uid, on_next, on_error=None) -> Subscription:
        return self._subscribe(expenses_path(uid), lambda: self.list_expenses(actor, uid), on_next, on_error)

    def _subscribe(self, path: str, read: Callable[[], Any], on_next, on_error) -> Subscription:
        """
        Deliver the current snapshot right away, then a fresh one after every
        write to path. A failed read is reported once through on_error and
        ends the subscription.
        """
        def refresh():
            try:
                snapshot = read()
            except Exception as exc:
                sub.cancel()
                if on_error is None:
                    raise
                on_error(exc)
                return
            if sub.active:
                on_next(snapshot)

        sub = Subscription(self.feed, path, refresh)
        self.feed.add(sub)
        sub.fire()
        return sub


def _expense_out(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "name": doc.get("name"),
        "amount": doc.get("amount"),
        "category": doc.get("category"),
        "created_at": doc.get("created_at"),
    }
