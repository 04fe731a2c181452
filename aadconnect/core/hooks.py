"""Named extension points and the registry that runs them.

Callbacks are kept per :class:`HookPoint` and invoked synchronously in
registration order. Filter points thread a value through the chain: a
callback that returns anything other than ``None`` replaces the value seen
by the next callback and by the caller. Notification points ignore return
values.
"""

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

HookCallback = Callable[..., Any]


class HookPoint(StrEnum):
    """Extension points exposed by the login flow.

    ``USER_CREATE`` receives the new user id and the merged claims.
    ``USER_UPDATE`` receives the user id after every write to the stored
    snapshots. ``USER_UPDATE_CLAIMS`` receives the user id and the merged
    claims when an existing user logs in.
    """

    ALTER_REQUEST = "alter-request"
    LOGIN_TEST = "user-login-test"
    CREATION_TEST = "user-creation-test"
    AUTH_URL = "auth-url"
    REDIRECT_USER_BACK = "redirect-user-back"
    USER_CREATE = "user-create"
    USER_UPDATE = "user-update"
    USER_UPDATE_CLAIMS = "update-user-using-current-claim"


class HookRegistry:
    """Ordered callback lists keyed by hook point."""

    def __init__(self) -> None:
        self._callbacks: dict[HookPoint, list[HookCallback]] = {}

    def register(self, point: HookPoint, callback: HookCallback) -> None:
        """Append a callback to a hook point."""
        self._callbacks.setdefault(point, []).append(callback)

    def callbacks(self, point: HookPoint) -> list[HookCallback]:
        return list(self._callbacks.get(point, []))

    def filter(self, point: HookPoint, value: Any, *args: Any) -> Any:
        """Pass ``value`` through every callback; non-None results replace it."""
        for callback in self.callbacks(point):
            result = callback(value, *args)
            if result is not None:
                logger.debug("hook %s replaced value via %r", point, callback)
                value = result
        return value

    def notify(self, point: HookPoint, *args: Any) -> None:
        """Call every callback for a notification point."""
        for callback in self.callbacks(point):
            callback(*args)
