"""Typed view over the per-browser session dictionary."""

import logging
import secrets
from typing import Any, MutableMapping, Optional

from csrf import generate_csrf_token, validate_csrf_token

logger = logging.getLogger(__name__)

USER_ID_KEY = "user_id"
CSRF_KEY = "csrf_token"
FLASH_KEY = "flash"
SESSION_ID_KEY = "sid"


class SessionContext:
    def __init__(self, data: MutableMapping[str, Any]) -> None:
        self._data = data

    @property
    def session_id(self) -> Optional[str]:
        return self._data.get(SESSION_ID_KEY)

    @property
    def user_id(self) -> Optional[int]:
        value = self._data.get(USER_ID_KEY)
        return int(value) if value is not None else None

    @user_id.setter
    def user_id(self, value: Optional[int]) -> None:
        if value is None:
            self._data.pop(USER_ID_KEY, None)
        else:
            self._data[USER_ID_KEY] = int(value)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def issue_csrf_token(self) -> str:
        token = generate_csrf_token()
        self._data[CSRF_KEY] = token
        return token

    def consume_csrf_token(self, submitted: Optional[str]) -> bool:
        expected = self._data.pop(CSRF_KEY, None)
        return validate_csrf_token(submitted or "", expected or "")

    def flash(self, key: str, value: Any) -> None:
        flashes = dict(self._data.get(FLASH_KEY) or {})
        flashes[key] = value
        self._data[FLASH_KEY] = flashes

    def pop_flash(self, key: str, default: Any = None) -> Any:
        flashes = dict(self._data.get(FLASH_KEY) or {})
        value = flashes.pop(key, default)
        if flashes:
            self._data[FLASH_KEY] = flashes
        else:
            self._data.pop(FLASH_KEY, None)
        return value

    def regenerate(self) -> None:
        """Drop everything and start a new session identity."""
        previous = self.session_id
        self._data.clear()
        self._data[SESSION_ID_KEY] = secrets.token_urlsafe(24)
        logger.info(f"session_regenerate: replaced={previous is not None}")

    def clear(self) -> None:
        self._data.clear()
