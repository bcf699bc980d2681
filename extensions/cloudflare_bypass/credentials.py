import json
import logging
import os
import threading
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from .errors import StorageError

logger = logging.getLogger(__name__)

CF_CLEARANCE_KEY = "cf_clearance_cookie"
USER_AGENT_KEY = "user_agent_override"


class Credentials(BaseModel):
    """A single token + user-agent pair. Instances are never mutated."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    cf_clearance_cookie: Optional[str] = None
    user_agent_override: Optional[str] = None

    @field_validator(CF_CLEARANCE_KEY, USER_AGENT_KEY)
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip()

    @property
    def cf_clearance(self) -> Optional[str]:
        return self.cf_clearance_cookie or None

    @property
    def user_agent(self) -> Optional[str]:
        return self.user_agent_override or None


class CredentialStore:
    """
    Holds the credentials entered by the user, persisted as JSON.

    Readers get the current Credentials object; writers build a new one and
    swap it in under a lock, so a reader never sees a token from one edit
    paired with a user agent from another.
    """

    def __init__(self, path: Optional[str] = None, initial: Optional[Credentials] = None):
        self.path = path
        self._lock = threading.Lock()
        self._current = initial or Credentials()

    @classmethod
    def load(cls, path: str) -> "CredentialStore":
        try:
            with open(path, 'r', encoding='utf-8') as f:
                credentials = Credentials(**json.load(f))
            logger.info("Loaded credentials from %s", path)
        except (FileNotFoundError, ValueError, TypeError):
            credentials = Credentials()
            logger.info("No saved credentials at %s, starting empty", path)
        return cls(path, credentials)

    def snapshot(self) -> Credentials:
        return self._current

    def update(self, values: Dict[str, Any]) -> Credentials:
        """Merges `values` into the stored credentials and persists them."""
        with self._lock:
            merged = {**self._current.model_dump(), **values}
            credentials = Credentials(**merged)
            if self.path:
                self._save(credentials)
            self._current = credentials
        return credentials

    def _save(self, credentials: Credentials):
        tmp_path = self.path + ".tmp"
        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(credentials.model_dump(), f, indent=4)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StorageError(f"Could not save credentials to {self.path}: {e}") from e
