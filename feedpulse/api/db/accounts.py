"""DB-backed account repository."""

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from feedpulse.core.exceptions import ConflictError
from feedpulse.core.interfaces import BaseAccountRepository
from feedpulse.core.logging import get_logger
from feedpulse.core.types import Account

log = get_logger(__name__)

_COLUMNS = (
    "account_id, email, password_hash, name, first_name, last_name, is_active, "
    "email_verified, email_verified_at, deactivation_requested_at, created_at"
)


class AccountRepository(BaseAccountRepository):
    """Async PostgreSQL-backed account storage."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def find_by_id(self, account_id: str) -> Account | None:
        """Look up an account by ID."""
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(f"SELECT {_COLUMNS} FROM accounts WHERE account_id = :aid"),
                {"aid": account_id},
            )
            r = row.mappings().first()
            if r is None:
                return None
            return self._row_to_account(r)

    async def find_by_email(self, email: str) -> Account | None:
        """Look up an account by email."""
        async with self._engine.begin() as conn:
            row = await conn.execute(
                text(f"SELECT {_COLUMNS} FROM accounts WHERE email = :email"),
                {"email": email},
            )
            r = row.mappings().first()
            if r is None:
                return None
            return self._row_to_account(r)

    async def create(self, account: Account) -> Account:
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        INSERT INTO accounts
                            (account_id, email, password_hash, name, first_name,
                             last_name, is_active, email_verified, email_verified_at,
                             deactivation_requested_at, created_at)
                        VALUES
                            (:aid, :email, :hash, :name, :first, :last, :active,
                             :verified, :verified_at, :deact, :created)
                        """
                    ),
                    self._params(account),
                )
        except IntegrityError as exc:
            raise ConflictError("Email already registered", {"email": account.email}) from exc

        log.info("account_created", account_id=account.account_id)
        return account

    async def update(self, account: Account) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    text(
                        """
                        UPDATE accounts SET
                            email = :email,
                            password_hash = :hash,
                            name = :name,
                            first_name = :first,
                            last_name = :last,
                            is_active = :active,
                            email_verified = :verified,
                            email_verified_at = :verified_at,
                            deactivation_requested_at = :deact
                        WHERE account_id = :aid
                        """
                    ),
                    self._params(account),
                )
        except IntegrityError as exc:
            raise ConflictError("Email already registered", {"email": account.email}) from exc

    async def find_pending_deactivation(self) -> list[Account]:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                text(
                    f"SELECT {_COLUMNS} FROM accounts "
                    "WHERE is_active = true AND deactivation_requested_at IS NOT NULL"
                )
            )
            return [self._row_to_account(r) for r in result.mappings().all()]

    @staticmethod
    def _params(account: Account) -> dict[str, object]:
        return {
            "aid": account.account_id,
            "email": account.email,
            "hash": account.password_hash,
            "name": account.name,
            "first": account.first_name,
            "last": account.last_name,
            "active": account.is_active,
            "verified": account.email_verified,
            "verified_at": account.email_verified_at,
            "deact": account.deactivation_requested_at,
            "created": account.created_at,
        }

    @staticmethod
    def _row_to_account(r: object) -> Account:
        """Convert a DB row mapping to an Account dataclass."""
        return Account(
            account_id=r["account_id"],  # type: ignore[index]
            email=r["email"],  # type: ignore[index]
            password_hash=r["password_hash"],  # type: ignore[index]
            name=r["name"] or "",  # type: ignore[index]
            first_name=r.get("first_name") or "",  # type: ignore[union-attr]
            last_name=r.get("last_name") or "",  # type: ignore[union-attr]
            is_active=r["is_active"],  # type: ignore[index]
            email_verified=r["email_verified"],  # type: ignore[index]
            email_verified_at=r.get("email_verified_at"),  # type: ignore[union-attr]
            deactivation_requested_at=r.get("deactivation_requested_at"),  # type: ignore[union-attr]
            created_at=r["created_at"],  # type: ignore[index]
        )
