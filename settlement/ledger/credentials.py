from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class AccessToken:
    value: str
    expires_at: float


class CredentialCache:
    """Holds one short-lived access token and refreshes it before expiry.

    ``fetch`` returns ``(token, expires_in_seconds)``. A token is reused until
    ``skew_seconds`` before it expires.
    """

    def __init__(
        self,
        fetch: Callable[[], tuple[str, int]],
        skew_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._fetch = fetch
        self._skew = skew_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._token: AccessToken | None = None

    def get(self) -> str:
        with self._lock:
            now = self._clock()
            if self._token is None or now >= self._token.expires_at - self._skew:
                value, expires_in = self._fetch()
                self._token = AccessToken(value=value, expires_at=now + int(expires_in))
            return self._token.value

    def invalidate(self) -> None:
        with self._lock:
            self._token = None

    @property
    def cached(self) -> AccessToken | None:
        return self._token
