"""One-time password (token) lifecycle.

Tokens gate node registration. Each token has a use budget and an expiry;
it is usable while ``uses_remaining > 0`` and ``now < expires_at``.
Consumption is a single conditional decrement so concurrent requests can
never spend the same use twice.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4

import structlog
from sqlalchemy import text

from server_init.storage.database import Database

logger = structlog.get_logger(__name__)

DEFAULT_TTL = timedelta(hours=12)


class TokenNotFound(Exception):
    """No unexpired token with uses remaining matches the given code."""


def token_ref(code: str) -> str:
    """Short non-reversible reference to a token, safe to log."""
    return hashlib.sha256(code.encode()).hexdigest()[:8]


def _to_millis(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Token:
    """A stored token record."""

    code: str
    expires_at: datetime
    uses_remaining: int

    def is_usable(self, now: datetime) -> bool:
        return self.uses_remaining > 0 and now < self.expires_at


class TokenStore:
    """Durable token table backed by SQLite.

    Args:
        database: Connected ``Database``.
        clock: Returns the current UTC time; replaced in tests.
    """

    def __init__(
        self,
        database: Database,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.database = database
        self.clock = clock

    def generate(self, uses: int = 1, ttl: timedelta = DEFAULT_TTL) -> str:
        """Create a new token.

        Args:
            uses: Number of registrations the token authorizes.
            ttl: Lifetime from now.

        Returns:
            The new token code.

        Raises:
            ValueError: If ``uses`` is below 1 or ``ttl`` is not positive.
        """
        if uses < 1:
            raise ValueError("uses must be at least 1")
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        code = uuid4().hex
        expires_at = self.clock() + ttl
        with self.database.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO tokens (code, expires_at, uses_remaining) "
                    "VALUES (:code, :expires_at, :uses)"
                ),
                {"code": code, "expires_at": _to_millis(expires_at), "uses": uses},
            )

        logger.info(
            "token_generated",
            token_ref=token_ref(code),
            uses=uses,
            expires_at=expires_at.isoformat(),
        )
        return code

    def get(self, code: str) -> Optional[Token]:
        """Return the stored record for ``code``, usable or not."""
        with self.database.read() as conn:
            row = conn.execute(
                text(
                    "SELECT code, expires_at, uses_remaining FROM tokens "
                    "WHERE code = :code"
                ),
                {"code": code},
            ).first()
        if row is None:
            return None
        return Token(
            code=row.code,
            expires_at=datetime.fromtimestamp(row.expires_at / 1000, tz=timezone.utc),
            uses_remaining=row.uses_remaining,
        )

    def validate(self, code: str) -> bool:
        """Check whether ``code`` is currently usable without consuming it."""
        with self.database.read() as conn:
            row = conn.execute(
                text(
                    "SELECT 1 FROM tokens WHERE code = :code "
                    "AND uses_remaining > 0 AND expires_at > :now"
                ),
                {"code": code, "now": _to_millis(self.clock())},
            ).first()
        return row is not None

    def consume(self, code: str) -> None:
        """Spend one use of ``code``; delete the token when none remain.

        The check and the decrement are one conditional UPDATE inside a
        write transaction.

        Raises:
            TokenNotFound: The token is unknown, expired or exhausted.
        """
        with self.database.begin() as conn:
            result = conn.execute(
                text(
                    "UPDATE tokens SET uses_remaining = uses_remaining - 1 "
                    "WHERE code = :code AND uses_remaining > 0 AND expires_at > :now"
                ),
                {"code": code, "now": _to_millis(self.clock())},
            )
            if result.rowcount != 1:
                raise TokenNotFound(token_ref(code))
            conn.execute(
                text("DELETE FROM tokens WHERE code = :code AND uses_remaining <= 0"),
                {"code": code},
            )

        logger.info("token_consumed", token_ref=token_ref(code))

    def revoke_all(self) -> int:
        """Remove every token. Returns the number removed."""
        with self.database.begin() as conn:
            removed = conn.execute(text("DELETE FROM tokens")).rowcount
        logger.warning("tokens_revoked", count=removed)
        return removed

    def purge_expired(self) -> int:
        """Remove tokens whose expiry has passed. Returns the number removed."""
        with self.database.begin() as conn:
            removed = conn.execute(
                text("DELETE FROM tokens WHERE expires_at <= :now"),
                {"now": _to_millis(self.clock())},
            ).rowcount
        if removed:
            logger.info("expired_tokens_purged", count=removed)
        return removed
