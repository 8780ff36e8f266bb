from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from .errors import AuthError, DuplicateUserError, ValidationError
from .models import USERNAME_RE, User, now_ts
from .passwords import PasswordHasher
from .persistence import Collection, Persistence, load_or_empty, save_logged

LOGGER = logging.getLogger("pairchat.identity")

MIN_PASSWORD_LENGTH = 6
INVALID_CREDENTIALS = "Invalid username or password"


class IdentityStore:
    """Registered users keyed by lower-cased username."""

    def __init__(
        self,
        persistence: Persistence,
        hasher: Optional[PasswordHasher] = None,
        lock: Optional[threading.RLock] = None,
        clock=now_ts,
    ):
        self.persistence = persistence
        self.hasher = hasher or PasswordHasher()
        self.lock = lock or threading.RLock()
        self.clock = clock
        self._users: Dict[str, User] = {}
        # compared against on unknown usernames so both failure paths cost one hash
        self._dummy_hash = self.hasher.hash("pairchat-dummy-password")

    def load(self) -> int:
        raw = load_or_empty(self.persistence, Collection.USERS)
        users: Dict[str, User] = {}
        for item in raw:
            try:
                user = User.model_validate(item)
            except ValueError as e:
                LOGGER.warning("Skipping malformed user record: %s", e)
                continue
            users[user.username.lower()] = user
        with self.lock:
            self._users = users
        LOGGER.info("Loaded %d users", len(users))
        return len(users)

    def flush(self) -> bool:
        with self.lock:
            payload = [user.to_wire() for user in self._users.values()]
            return save_logged(self.persistence, Collection.USERS, payload)

    def find(self, username: Optional[str]) -> Optional[User]:
        if not username or not isinstance(username, str):
            return None
        with self.lock:
            return self._users.get(username.strip().lower())

    def all(self) -> List[User]:
        with self.lock:
            return list(self._users.values())

    def register(self, username: str, password: str, display_name: Optional[str] = None) -> User:
        username = (username or "").strip()
        password = password or ""
        if not username or not password:
            raise ValidationError("Username and password are required")
        if not USERNAME_RE.match(username):
            raise ValidationError("Username: 3-20 characters, letters, digits and _ only")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password: at least {MIN_PASSWORD_LENGTH} characters")

        password_hash = self.hasher.hash(password)
        user = User(
            username=username,
            password_hash=password_hash,
            display_name=(display_name or "").strip()[:40] or username,
            created_at=self.clock(),
        )
        with self.lock:
            if username.lower() in self._users:
                raise DuplicateUserError("Username already taken")
            self._users[username.lower()] = user
            self.flush()
        LOGGER.info("New user registered: %s", username)
        return user

    def verify(self, username: str, password: str) -> User:
        user = self.find(username)
        if user is None:
            self.hasher.verify(password or "", self._dummy_hash)
            raise AuthError(INVALID_CREDENTIALS)
        if not self.hasher.verify(password or "", user.password_hash):
            raise AuthError(INVALID_CREDENTIALS)
        return user
