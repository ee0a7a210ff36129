#!/usr/bin/env python3
"""
Session Token Storage

Holds the bearer access token and the refresh token of the signed-in user.
"""

import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class TokenPair:
    access_token: str | None = None
    refresh_token: str | None = None


class TokenStore:
    """
    In-memory token storage shared by the HTTP worker threads.

    Reads and writes are guarded by a lock because requests run in
    ``asyncio.to_thread`` workers.
    """

    def __init__(self, access_token: str | None = None, refresh_token: str | None = None):
        self._lock = threading.Lock()
        self._tokens = TokenPair(access_token, refresh_token)

    @property
    def access_token(self) -> str | None:
        with self._lock:
            return self._tokens.access_token

    @property
    def refresh_token(self) -> str | None:
        with self._lock:
            return self._tokens.refresh_token

    @property
    def signed_in(self) -> bool:
        return self.access_token is not None

    def store(self, access_token: str, refresh_token: str | None = None) -> None:
        """
        Save new tokens.

        Raises:
            ValueError: If the access token is empty
        """
        if not access_token or not isinstance(access_token, str):
            raise ValueError("Invalid token: must be a non-empty string")
        with self._lock:
            self._tokens.access_token = access_token
            if refresh_token is not None:
                self._tokens.refresh_token = refresh_token

    def clear(self) -> None:
        with self._lock:
            self._tokens = TokenPair()
        logger.info("Session tokens cleared")
