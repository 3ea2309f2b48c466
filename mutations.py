"""
Writes against a user's documents.

A mutator never raises for a rejected write. It publishes a
PermissionDeniedError on the error channel and returns a failed
MutationResult; callers decide how to present it.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

from pymongo.errors import PyMongoError

from database import AccessDenied, DocumentStore, expense_path, expenses_path, user_path
from events import PERMISSION_ERROR, ErrorEmitter, PermissionDeniedError
from schemas import ExpenseIn, IncomeUpdate, ProfileSettings, ProfileUpdate

logger = logging.getLogger("spendsense.mutations")

# store failures that end up on the error channel
WRITE_ERRORS = (AccessDenied, PyMongoError)


@dataclass
class MutationResult:
    ok: bool
    value: Any = None
    error: Optional[PermissionDeniedError] = None
    not_found: bool = False


class _Mutator:
    def __init__(self, store: DocumentStore, uid: str, errors: ErrorEmitter):
        self.store = store
        self.uid = uid
        self.errors = errors
        self.loading = False

    def _run(self, path: str, operation: str, payload: Optional[dict], write) -> MutationResult:
        self.loading = True
        try:
            value = write()
        except WRITE_ERRORS as exc:
            logger.info("%s on %s failed: %s", operation, path, exc)
            error = PermissionDeniedError.for_request(path, operation, payload)
            self.errors.emit(PERMISSION_ERROR, error)
            return MutationResult(ok=False, error=error)
        finally:
            self.loading = False
        if value is None or value is False:
            return MutationResult(ok=False, not_found=True)
        return MutationResult(ok=True, value=value)


class ExpenseMutator(_Mutator):
    def create(self, expense: ExpenseIn) -> MutationResult:
        payload = expense.model_dump()
        return self._run(
            expenses_path(self.uid), "create", payload,
            lambda: self.store.add_expense(self.uid, self.uid, payload),
        )

    def update(self, expense_id: str, expense: ExpenseIn) -> MutationResult:
        payload = expense.model_dump()
        return self._run(
            expense_path(self.uid, expense_id), "update", payload,
            lambda: self.store.update_expense(self.uid, self.uid, expense_id, payload),
        )

    def delete(self, expense_id: str) -> MutationResult:
        return self._run(
            expense_path(self.uid, expense_id), "delete", None,
            lambda: self.store.delete_expense(self.uid, self.uid, expense_id),
        )


class ProfileMutator(_Mutator):
    def _merge(self, payload: dict) -> MutationResult:
        def write():
            self.store.set_profile(self.uid, self.uid, payload)
            return payload

        return self._run(user_path(self.uid), "update", payload, write)

    def save_settings(self, settings: ProfileSettings) -> MutationResult:
        return self._merge(settings.model_dump())

    def set_income(self, update: IncomeUpdate) -> MutationResult:
        return self._merge({"income": update.income})

    def update_profile(self, update: ProfileUpdate) -> MutationResult:
        return self._merge(update.model_dump(exclude_none=True))
