"""Bridge to the host application's session mechanism."""

from typing import Protocol

from starlette.requests import Request

SESSION_USER_KEY = "user_id"


class HostSession(Protocol):
    """What the login flow needs from the host's session primitive."""

    def login(self, user_id: str) -> None: ...

    def logout(self) -> None: ...

    @property
    def user_id(self) -> str | None: ...


class StarletteSession:
    """HostSession backed by Starlette's signed-cookie ``SessionMiddleware``."""

    def __init__(self, request: Request) -> None:
        self._request = request

    def login(self, user_id: str) -> None:
        self._request.session.clear()
        self._request.session[SESSION_USER_KEY] = user_id

    def logout(self) -> None:
        self._request.session.clear()

    @property
    def user_id(self) -> str | None:
        return self._request.session.get(SESSION_USER_KEY)
