from __future__ import annotations

import hmac
import hashlib
import secrets
from typing import Optional


# =========================
# Password hashing (PBKDF2)
# =========================
class PasswordHasher:
    scheme = "pbkdf2_sha256"

    def __init__(self, iterations: int = 200_000):
        self.iterations = iterations

    def hash(self, password: str, salt: Optional[str] = None, iterations: Optional[int] = None) -> str:
        if salt is None:
            salt = secrets.token_hex(16)
        rounds = iterations or self.iterations
        dk = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), rounds)
        return f"{self.scheme}${rounds}${salt}${dk.hex()}"

    def verify(self, password: str, stored: str) -> bool:
        try:
            scheme, rounds, salt, _ = stored.split("$", 3)
            rounds_int = int(rounds)
        except ValueError:
            return False
        if scheme != self.scheme:
            return False
        return hmac.compare_digest(self.hash(password, salt, rounds_int), stored)
