"""
Live dashboard.

Combines an AuthSession (profile subscription) with a subscription to the
signed-in user's expenses and recomputes the dashboard on every change.
"""
import logging
import threading
from typing import Callable, List, Optional

from budget import category_breakdown, compute_budget
from database import AccessDenied, DocumentStore, expenses_path
from events import PERMISSION_ERROR, ErrorEmitter, PermissionDeniedError
from session import AuthSession, SessionState

logger = logging.getLogger("spendsense.live")


def build_dashboard(profile: Optional[dict], expenses: List[dict]) -> dict:
    profile = profile or {}
    income = profile.get("income") or 0
    summary = compute_budget(income, expenses)
    return {
        "profile": profile,
        "currency": profile.get("currency", "USD"),
        # no income yet: the dashboard asks for it before showing a budget
        "needs_income": income <= 0,
        "summary": summary.model_dump(),
        "expenses": expenses,
        "chart": category_breakdown(expenses),
    }


class LiveDashboard:
    def __init__(self, store: DocumentStore, errors: ErrorEmitter, on_update: Callable[[dict], None]):
        self.store = store
        self.errors = errors
        self.on_update = on_update
        # one lock for the dashboard and its session
        self.lock = threading.RLock()
        self.session = AuthSession(store, errors, on_change=self._on_session, lock=self.lock)
        self.expenses: List[dict] = []
        self.expenses_loading = False
        self._uid: Optional[str] = None
        self._generation = 0
        self._expenses_sub = None

    def observe(self, user: Optional[dict]):
        with self.lock:
            # drop the previous identity's expenses before the new identity is seen
            self._resubscribe(None)
            self.session.observe(user)

    def logout(self):
        self.session.logout()

    def close(self):
        with self.lock:
            self._cancel()
            self._generation += 1
            self.session.close()

    def snapshot(self) -> dict:
        with self.lock:
            state = self.session.state
            if state != SessionState.VERIFIED:
                return {"state": state.value, "redirect": self.session.resolve("/dashboard")}
            view = build_dashboard(self.session.profile, self.expenses)
            view["state"] = state.value
            return view

    def _cancel(self):
        if self._expenses_sub is not None:
            self._expenses_sub.cancel()
            self._expenses_sub = None

    def _on_session(self, session: AuthSession):
        uid = session.uid if session.state == SessionState.VERIFIED else None
        if uid != self._uid:
            self._resubscribe(uid)
            if uid is not None:
                # the expense subscription publishes its first snapshot itself
                return
        if session.state == SessionState.LOADING or self.expenses_loading:
            return
        self._publish()

    def _resubscribe(self, uid: Optional[str]):
        self._cancel()
        self._generation += 1
        self._uid = uid
        self.expenses = []
        if uid is None:
            self.expenses_loading = False
            return
        self.expenses_loading = True
        generation = self._generation
        self._expenses_sub = self.store.subscribe_expenses(
            uid, uid,
            lambda items: self._on_expenses(generation, items),
            lambda exc: self._on_expenses_error(generation, uid, exc),
        )

    def _on_expenses(self, generation: int, items: List[dict]):
        with self.lock:
            if generation != self._generation:
                return
            self.expenses = items
            self.expenses_loading = False
            self._publish()

    def _on_expenses_error(self, generation: int, uid: str, exc: Exception):
        with self.lock:
            if generation != self._generation:
                return
            logger.error("Error listening to expenses of %s: %s", uid, exc)
            if isinstance(exc, AccessDenied):
                self.errors.emit(PERMISSION_ERROR, PermissionDeniedError.for_request(expenses_path(uid), "list"))
            self.expenses = []
            self.expenses_loading = False
            self._publish()

    def _publish(self):
        if self.session.state == SessionState.LOADING:
            return
        self.on_update(self.snapshot())
