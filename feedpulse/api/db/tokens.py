"""DB-backed account token repository."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from feedpulse.core.interfaces import BaseAccountTokenRepository
from feedpulse.core.logging import get_logger
from feedpulse.core.types import AccountToken, AccountTokenType

log = get_logger(__name__)


class AccountTokenRepository(BaseAccountTokenRepository):
    """Async PostgreSQL-backed storage for verification, reset and email change tokens."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def find_by_token(self, token: str) -> AccountToken | None:
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text("SELECT * FROM account_tokens WHERE token = :token"),
                {"token": token},
            )
            r = row.mappings().first()
            if r is None:
                return None
            return self._row_to_token(r)

    async def create(self, token: AccountToken) -> AccountToken:
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    """
                    INSERT INTO account_tokens
                        (token_id, account_id, token, token_type, new_email,
                         created_at, expires_at, used_at)
                    VALUES
                        (:tid, :aid, :token, :type, :new_email,
                         :created, :expires, NULL)
                    """
                ),
                {
                    "tid": token.token_id,
                    "aid": token.account_id,
                    "token": token.token,
                    "type": token.token_type.value,
                    "new_email": token.new_email,
                    "created": token.created_at,
                    "expires": token.expires_at,
                },
            )
        log.debug(
            "account_token_created",
            account_id=token.account_id,
            token_type=token.token_type.value,
        )
        return token

    async def mark_used(self, token_id: str, at: datetime) -> bool:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    "UPDATE account_tokens SET used_at = :at "
                    "WHERE token_id = :tid AND used_at IS NULL"
                ),
                {"at": at, "tid": token_id},
            )
            return bool(result.rowcount)

    async def delete_by_account_and_type(
        self, account_id: str, token_type: AccountTokenType
    ) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    "DELETE FROM account_tokens "
                    "WHERE account_id = :aid AND token_type = :type"
                ),
                {"aid": account_id, "type": token_type.value},
            )

    @staticmethod
    def _row_to_token(r: object) -> AccountToken:
        """Convert a DB row mapping to an AccountToken dataclass."""
        return AccountToken(
            token_id=r["token_id"],  # type: ignore[index]
            account_id=r["account_id"],  # type: ignore[index]
            token=r["token"],  # type: ignore[index]
            token_type=AccountTokenType(r["token_type"]),  # type: ignore[index]
            new_email=r.get("new_email"),  # type: ignore[union-attr]
            created_at=r["created_at"],  # type: ignore[index]
            expires_at=r["expires_at"],  # type: ignore[index]
            used_at=r.get("used_at"),  # type: ignore[union-attr]
        )
