"""
Permission errors and the channel they are published on.

A write or read rejected by the document store's security rules is wrapped into
a PermissionDeniedError and emitted on an ErrorEmitter. The emitter is created
per application (see main.app.state.errors) and handed to whoever needs it.
"""
import json
import logging
import threading
from collections import deque
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel

logger = logging.getLogger("spendsense.events")

PERMISSION_ERROR = "permission-error"

Operation = Literal["get", "list", "create", "update", "delete"]


class SecurityRuleContext(BaseModel):
    path: str
    operation: Operation
    request_resource_data: Optional[Dict[str, Any]] = None


class PermissionDeniedError(Exception):
    def __init__(self, context: SecurityRuleContext):
        details = {"details": "A request to the document store was denied by security rules."}
        details.update(context.model_dump(mode="json", exclude_none=True))
        super().__init__(
            "Missing or insufficient permissions: the following request was denied "
            "by the document store security rules:\n" + json.dumps(details, indent=2)
        )
        self.context = context
        self.digest = f"PERMISSION_ERROR: {context.operation.upper()} on {context.path}"

    @classmethod
    def for_request(cls, path: str, operation: str, data: Optional[dict] = None):
        return cls(SecurityRuleContext(path=path, operation=operation, request_resource_data=data))


Listener = Callable[..., None]


class ErrorEmitter:
    def __init__(self):
        self._events: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def on(self, event_name: str, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it again."""
        with self._lock:
            self._events.setdefault(event_name, []).append(listener)

        def unsubscribe():
            with self._lock:
                listeners = self._events.get(event_name, [])
                self._events[event_name] = [l for l in listeners if l is not listener]

        return unsubscribe

    def emit(self, event_name: str, *args) -> None:
        with self._lock:
            listeners = list(self._events.get(event_name, []))
        for listener in listeners:
            listener(*args)


GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."


class PermissionErrorListener:
    """
    Surfaces emitted permission errors.

    In development the full error is kept for the request that caused it and is
    rendered with its context; in production only a generic message leaves the
    process and the error itself goes to the log.
    """

    def __init__(self, debug: bool = False):
        self.debug = debug
        self.received = deque(maxlen=100)

    def install(self, emitter: ErrorEmitter) -> Callable[[], None]:
        return emitter.on(PERMISSION_ERROR, self)

    def __call__(self, error: PermissionDeniedError) -> None:
        self.received.append(error)
        if self.debug:
            logger.error("%s\n%s", error.digest, error)
        else:
            logger.error("Permission denied: %s", error.digest)

    def render(self, error: PermissionDeniedError) -> dict:
        if not self.debug:
            return {"error": GENERIC_ERROR_MESSAGE}
        return {
            "error": str(error),
            "digest": error.digest,
            "context": error.context.model_dump(mode="json", exclude_none=True),
        }
