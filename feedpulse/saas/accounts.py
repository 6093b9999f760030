"""Account lifecycle — registration, login, email tokens and deferred deactivation."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta

import bcrypt

from feedpulse.core.constants import (
    ACCOUNT_TOKEN_BYTES,
    DEFAULT_DEACTIVATION_GRACE_DAYS,
    EMAIL_CHANGE_EXPIRY_HOURS,
    EMAIL_VERIFICATION_EXPIRY_HOURS,
    MSG_UNAUTHORIZED,
    PASSWORD_RESET_EXPIRY_HOURS,
)
from feedpulse.core.exceptions import (
    AccountTokenError,
    AuthenticationError,
    ConflictError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from feedpulse.core.interfaces import (
    BaseAccountNotifier,
    BaseAccountRepository,
    BaseAccountTokenRepository,
)
from feedpulse.core.logging import get_logger
from feedpulse.core.types import Account, AccountToken, AccountTokenType, utcnow
from feedpulse.saas.team import normalize_email
from feedpulse.saas.tokens import TokenIssuer

log = get_logger(__name__)

MAX_PASSWORD_BYTES = 72     # bcrypt input limit
MIN_PASSWORD_LENGTH = 8

PROFILE_FIELDS = ("name", "first_name", "last_name")

TOKEN_LIFETIMES: dict[AccountTokenType, timedelta] = {
    AccountTokenType.EMAIL_VERIFICATION: timedelta(hours=EMAIL_VERIFICATION_EXPIRY_HOURS),
    AccountTokenType.PASSWORD_RESET: timedelta(hours=PASSWORD_RESET_EXPIRY_HOURS),
    AccountTokenType.EMAIL_CHANGE: timedelta(hours=EMAIL_CHANGE_EXPIRY_HOURS),
}


# --- Password helpers ---
def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode(), hashed_password.encode())
    except ValueError:
        return False


def check_password_policy(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        msg = f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        raise ValidationError(msg)
    if len(password.encode()) > MAX_PASSWORD_BYTES:
        msg = f"Password must be at most {MAX_PASSWORD_BYTES} bytes"
        raise ValidationError(msg)


def generate_account_token() -> str:
    return secrets.token_hex(ACCOUNT_TOKEN_BYTES)


class AccountService:
    """Registers accounts and turns credentials into tenant-aware tokens.

    Email verification, password reset and email change all go through a
    single-use ``AccountToken`` handed to the notifier. Redeeming a token
    marks it used before the change is applied, so a token works once.
    """

    def __init__(
        self,
        accounts: BaseAccountRepository,
        token_issuer: TokenIssuer,
        account_tokens: BaseAccountTokenRepository,
        password_hash_rounds: int = 12,
        deactivation_grace_days: int = DEFAULT_DEACTIVATION_GRACE_DAYS,
        notifier: BaseAccountNotifier | None = None,
        auto_verify_email: bool = False,
    ) -> None:
        self._accounts = accounts
        self._tokens = token_issuer
        self._account_tokens = account_tokens
        self._rounds = password_hash_rounds
        self._grace_days = deactivation_grace_days
        self._notifier = notifier
        self._auto_verify = auto_verify_email

    @property
    def deactivation_grace_days(self) -> int:
        return self._grace_days

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        first_name: str = "",
        last_name: str = "",
    ) -> Account:
        """Create an unverified account and mail its verification token.

        With ``auto_verify_email`` (development only) the account is verified
        straight away and no token is issued.
        """
        email = normalize_email(email)
        check_password_policy(password)

        if await self._accounts.find_by_email(email) is not None:
            raise ConflictError("Email already registered", {"email": email})

        account = Account(
            email=email,
            password_hash=hash_password(password, self._rounds),
            name=name,
            first_name=first_name,
            last_name=last_name,
        )
        await self._accounts.create(account)
        log.info("account_registered", account_id=account.account_id)

        if self._auto_verify:
            return await self.mark_email_verified(account.account_id)

        try:
            await self.send_email_verification(account.account_id)
        except Exception as exc:
            # The account exists either way; resend_verification_email recovers.
            log.error(
                "verification_email_failed",
                account_id=account.account_id,
                error=str(exc),
            )
        return account

    async def login(self, email: str, password: str) -> tuple[str, Account]:
        """Check credentials and issue a token. A login cancels a pending deactivation."""
        account = await self._accounts.find_by_email(normalize_email(email))
        if account is None or not verify_password(password, account.password_hash):
            log.info("login_failed", reason="invalid_credentials")
            raise InvalidCredentialsError("Invalid email or password")

        if not account.is_active:
            log.warning("login_failed", reason="inactive", account_id=account.account_id)
            raise AuthenticationError(MSG_UNAUTHORIZED)

        if not account.email_verified:
            raise EmailNotVerifiedError("Please verify your email address before logging in")

        if account.is_pending_deactivation:
            account.deactivation_requested_at = None
            try:
                await self._accounts.update(account)
                log.info("deactivation_cancelled_by_login", account_id=account.account_id)
            except Exception as exc:
                log.error(
                    "deactivation_cancel_failed",
                    account_id=account.account_id,
                    error=str(exc),
                )

        token = await self._tokens.issue_token(account)
        return token, account

    async def get_account(self, account_id: str) -> Account:
        account = await self._accounts.find_by_id(account_id)
        if account is None:
            raise NotFoundError("Account not found", {"account_id": account_id})
        return account

    async def mark_email_verified(self, account_id: str, now: datetime | None = None) -> Account:
        account = await self.get_account(account_id)
        if account.email_verified:
            return account
        account.email_verified = True
        account.email_verified_at = now or utcnow()
        await self._accounts.update(account)
        log.info("account_email_verified", account_id=account_id)
        return account

    # ── Email verification ───────────────────────────────────────

    async def send_email_verification(
        self, account_id: str, now: datetime | None = None
    ) -> AccountToken:
        account = await self.get_account(account_id)
        if account.email_verified:
            raise ValidationError("Email already verified")

        record = await self._issue_account_token(
            account, AccountTokenType.EMAIL_VERIFICATION, now
        )
        if self._notifier is None:
            log.debug("verification_email_skipped", account_id=account_id)
        else:
            await self._notifier.send_verification_email(
                account.email, account.display_name, record.token
            )
        log.info("verification_email_sent", account_id=account_id)
        return record

    async def resend_verification_email(self, email: str, now: datetime | None = None) -> None:
        """Issue a fresh verification token. Silent for unknown or verified emails."""
        account = await self._accounts.find_by_email(normalize_email(email))
        if account is None or account.email_verified:
            log.info("verification_resend_ignored")
            return
        await self.send_email_verification(account.account_id, now)

    async def verify_email(self, token: str, now: datetime | None = None) -> Account:
        now = now or utcnow()
        record = await self._check_account_token(token, AccountTokenType.EMAIL_VERIFICATION, now)
        await self._spend_account_token(record, now)
        return await self.mark_email_verified(record.account_id, now)

    # ── Password reset ───────────────────────────────────────────

    async def request_password_reset(self, email: str, now: datetime | None = None) -> None:
        """Mail a short-lived reset token. Unknown emails get the same silent answer."""
        account = await self._accounts.find_by_email(normalize_email(email))
        if account is None or not account.is_active:
            log.info("password_reset_ignored")
            return

        record = await self._issue_account_token(account, AccountTokenType.PASSWORD_RESET, now)
        if self._notifier is None:
            log.debug("password_reset_email_skipped", account_id=account.account_id)
        else:
            await self._notifier.send_password_reset(
                account.email, account.display_name, record.token
            )
        log.info("password_reset_requested", account_id=account.account_id)

    async def reset_password(
        self, token: str, new_password: str, now: datetime | None = None
    ) -> Account:
        check_password_policy(new_password)
        now = now or utcnow()
        record = await self._check_account_token(token, AccountTokenType.PASSWORD_RESET, now)
        await self._spend_account_token(record, now)

        account = await self.get_account(record.account_id)
        account.password_hash = hash_password(new_password, self._rounds)
        await self._accounts.update(account)
        log.info("password_reset", account_id=account.account_id)
        return account

    # ── Email change ─────────────────────────────────────────────

    async def request_email_change(
        self, account_id: str, new_email: str, now: datetime | None = None
    ) -> AccountToken:
        """Mail a confirmation token to ``new_email``. The address changes on confirm."""
        new_email = normalize_email(new_email)
        account = await self.get_account(account_id)
        if new_email == account.email:
            raise ValidationError("New email is the same as the current email")
        if await self._accounts.find_by_email(new_email) is not None:
            raise ConflictError("Email already registered", {"email": new_email})

        record = await self._issue_account_token(
            account, AccountTokenType.EMAIL_CHANGE, now, new_email=new_email
        )
        if self._notifier is None:
            log.debug("email_change_email_skipped", account_id=account_id)
        else:
            await self._notifier.send_email_change(new_email, account.display_name, record.token)
        log.info("email_change_requested", account_id=account_id)
        return record

    async def confirm_email_change(
        self, token: str, now: datetime | None = None
    ) -> tuple[str, Account]:
        """Swap in the confirmed address and issue a token carrying it."""
        now = now or utcnow()
        record = await self._check_account_token(token, AccountTokenType.EMAIL_CHANGE, now)
        new_email = record.new_email
        if not new_email:
            raise AccountTokenError("Invalid or expired token")

        # The address may have been taken since the request.
        holder = await self._accounts.find_by_email(new_email)
        if holder is not None and holder.account_id != record.account_id:
            raise ConflictError("Email already registered", {"email": new_email})

        await self._spend_account_token(record, now)
        account = await self.get_account(record.account_id)
        account.email = new_email
        account.email_verified = True
        account.email_verified_at = now
        await self._accounts.update(account)
        log.info("email_changed", account_id=account.account_id)

        access_token = await self._tokens.issue_token(account)
        return access_token, account

    # ── Account token internals ──────────────────────────────────

    async def _issue_account_token(
        self,
        account: Account,
        token_type: AccountTokenType,
        now: datetime | None = None,
        new_email: str | None = None,
    ) -> AccountToken:
        """Replace any outstanding token of the same type with a fresh one."""
        now = now or utcnow()
        await self._account_tokens.delete_by_account_and_type(account.account_id, token_type)
        record = AccountToken(
            account_id=account.account_id,
            token=generate_account_token(),
            token_type=token_type,
            expires_at=now + TOKEN_LIFETIMES[token_type],
            new_email=new_email,
            created_at=now,
        )
        return await self._account_tokens.create(record)

    async def _check_account_token(
        self, token: str, token_type: AccountTokenType, now: datetime
    ) -> AccountToken:
        record = await self._account_tokens.find_by_token(token)
        if record is None or record.token_type != token_type:
            raise AccountTokenError("Invalid or expired token")
        if not record.is_valid(now):
            raise AccountTokenError("Token has expired or was already used")
        return record

    async def _spend_account_token(self, record: AccountToken, now: datetime) -> None:
        if not await self._account_tokens.mark_used(record.token_id, now):
            raise AccountTokenError("Token has expired or was already used")

    async def update_profile(self, account_id: str, **changes: str) -> Account:
        if not changes:
            raise ValidationError("No updates provided")
        unknown = set(changes) - set(PROFILE_FIELDS)
        if unknown:
            msg = f"Cannot update fields: {', '.join(sorted(unknown))}"
            raise ValidationError(msg)

        account = await self.get_account(account_id)
        for key, value in changes.items():
            setattr(account, key, value)
        await self._accounts.update(account)
        log.info("account_profile_updated", account_id=account_id, fields=sorted(changes))
        return account

    async def request_deactivation(
        self, account_id: str, now: datetime | None = None
    ) -> Account:
        account = await self.get_account(account_id)
        if account.is_pending_deactivation:
            raise ConflictError("Deactivation already requested")

        account.deactivation_requested_at = now or utcnow()
        await self._accounts.update(account)
        log.info(
            "deactivation_requested",
            account_id=account_id,
            deactivate_on=account.deactivation_date(self._grace_days).isoformat(),
        )
        return account

    async def cancel_deactivation(self, account_id: str) -> Account:
        account = await self.get_account(account_id)
        if not account.is_pending_deactivation:
            raise ValidationError("No deactivation request found")

        account.deactivation_requested_at = None
        await self._accounts.update(account)
        log.info("deactivation_cancelled", account_id=account_id)
        return account

    async def process_pending_deactivations(self, now: datetime | None = None) -> int:
        """Deactivate accounts whose grace period has run out. Returns how many."""
        now = now or utcnow()
        deactivated = 0
        for account in await self._accounts.find_pending_deactivation():
            if not account.should_be_deactivated(now, self._grace_days):
                continue

            account.is_active = False
            account.deactivation_requested_at = None
            try:
                await self._accounts.update(account)
            except Exception as exc:
                log.error(
                    "account_deactivation_failed",
                    account_id=account.account_id,
                    error=str(exc),
                )
                continue
            deactivated += 1
            log.info("account_deactivated", account_id=account.account_id)

        return deactivated
