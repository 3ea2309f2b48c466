"""
Session state and the routing policy that follows from it.

AuthSession follows one identity at a time: every identity change (sign in,
sign out, account switch) cancels the subscriptions of the previous identity
before new ones are made, and anything still arriving for an older identity is
dropped. Identity changes and listener callbacks are serialized on one
lock: change notifications arrive on whichever thread made the write.
"""
import enum
import logging
import threading
from typing import Callable, List, Optional

from database import AccessDenied, DocumentStore, user_path
from events import PERMISSION_ERROR, ErrorEmitter, PermissionDeniedError

logger = logging.getLogger("spendsense.session")

LOGIN_PATH = "/login"
VERIFY_EMAIL_PATH = "/verify-email"
DASHBOARD_PATH = "/dashboard"
AUTH_PATHS = frozenset({LOGIN_PATH, "/signup", "/forgot-password", VERIFY_EMAIL_PATH})


class SessionState(str, enum.Enum):
    LOADING = "loading"
    UNAUTHENTICATED = "unauthenticated"
    UNVERIFIED = "unverified"
    VERIFIED = "verified"


def state_for(user: Optional[dict]) -> SessionState:
    if user is None:
        return SessionState.UNAUTHENTICATED
    if not user.get("email_verified"):
        return SessionState.UNVERIFIED
    return SessionState.VERIFIED


def resolve_redirect(state: SessionState, path: str) -> Optional[str]:
    """Where a visitor in the given state must be sent from path, if anywhere."""
    if state == SessionState.LOADING:
        return None
    is_auth_path = path in AUTH_PATHS
    if state == SessionState.UNAUTHENTICATED:
        if not is_auth_path or path == VERIFY_EMAIL_PATH:
            return LOGIN_PATH
        return None
    if state == SessionState.UNVERIFIED:
        # auth pages stay reachable (forgot password, resend link)
        return None if is_auth_path else VERIFY_EMAIL_PATH
    return DASHBOARD_PATH if is_auth_path else None


class AuthSession:
    def __init__(self, store: DocumentStore, errors: ErrorEmitter,
                 on_change: Optional[Callable[["AuthSession"], None]] = None, lock=None):
        self.store = store
        self.lock = lock if lock is not None else threading.RLock()
        self.errors = errors
        self.user: Optional[dict] = None
        self.profile: Optional[dict] = None
        self.loading = True
        self._listeners: List[Callable[["AuthSession"], None]] = []
        if on_change is not None:
            self._listeners.append(on_change)
        self._generation = 0
        self._profile_sub = None

    @property
    def uid(self) -> Optional[str]:
        return str(self.user["_id"]) if self.user else None

    @property
    def state(self) -> SessionState:
        if self.loading:
            return SessionState.LOADING
        return state_for(self.user)

    def add_listener(self, listener: Callable[["AuthSession"], None]):
        self._listeners.append(listener)

    def resolve(self, path: str) -> Optional[str]:
        return resolve_redirect(self.state, path)

    def observe(self, user: Optional[dict]) -> None:
        """Identity change notification from the session provider."""
        with self.lock:
            self._cancel()
            self._generation += 1
            self.user = user
            self.profile = None

            if user is None:
                self.loading = False
                self._changed()
                return

            self.loading = True
            generation = self._generation
            uid = str(user["_id"])
            self._profile_sub = self.store.subscribe_profile(
                uid, uid,
                lambda doc: self._on_profile(generation, doc),
                lambda exc: self._on_profile_error(generation, uid, exc),
            )

    def logout(self) -> None:
        with self.lock:
            if self.user is not None:
                self.store.bump_token_version(self.uid)
            # the identity listener takes care of the rest
            self.observe(None)

    def close(self) -> None:
        with self.lock:
            self._cancel()
            self._generation += 1

    def _cancel(self):
        if self._profile_sub is not None:
            self._profile_sub.cancel()
            self._profile_sub = None

    def _on_profile(self, generation: int, doc: Optional[dict]):
        with self.lock:
            if generation != self._generation:
                return
            if doc is None:
                logger.warning("User document not found for UID: %s", self.uid)
            self.profile = doc
            self.loading = False
            self._changed()

    def _on_profile_error(self, generation: int, uid: str, exc: Exception):
        with self.lock:
            if generation != self._generation:
                return
            logger.error("Error fetching user document for %s: %s", uid, exc)
            if isinstance(exc, AccessDenied):
                self.errors.emit(PERMISSION_ERROR, PermissionDeniedError.for_request(user_path(uid), "get"))
            self.profile = None
            self.loading = False
            self._changed()

    def _changed(self):
        for listener in list(self._listeners):
            listener(self)
