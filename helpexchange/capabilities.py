"""
Collaborators used by the workflows: SMS delivery and password hashing.
"""

from __future__ import annotations

import logging
from typing import Protocol

from passlib.context import CryptContext

logger = logging.getLogger(__name__)


class SmsSender(Protocol):
    def send(self, phone: str, code: str) -> bool:
        """Deliver ``code`` to ``phone``; return whether the provider accepted it."""
        ...


class LoggingSmsSender:
    """Development sender that only logs the delivery."""

    def send(self, phone: str, code: str) -> bool:
        logger.info("SMS delivery requested for %s", phone)
        logger.debug("OTP for %s is %s", phone, code)
        return True


class PasswordHasher(Protocol):
    def hash(self, secret: str) -> str:
        ...

    def verify(self, secret: str, digest: str) -> bool:
        ...


class PasslibPasswordHasher:
    def __init__(self, schemes: tuple[str, ...] = ("pbkdf2_sha256",)):
        self._context = CryptContext(schemes=list(schemes), deprecated="auto")

    def hash(self, secret: str) -> str:
        return self._context.hash(secret)

    def verify(self, secret: str, digest: str) -> bool:
        return self._context.verify(secret, digest)
