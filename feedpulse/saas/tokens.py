"""Token issuance — signed claims bundles binding an identity to its resource tenant."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

from feedpulse.core.constants import JWT_ALGORITHM, MSG_UNAUTHORIZED
from feedpulse.core.exceptions import TokenInvalidError
from feedpulse.core.interfaces import BaseAccountRepository, BaseSubscriptionRepository
from feedpulse.core.logging import get_logger
from feedpulse.core.types import Account, Claims, FeatureSnapshot, MemberRole, utcnow
from feedpulse.saas.team import TeamResolver

log = get_logger(__name__)


# ── JWT Utilities ──────────────────────────────────────────────────


class JWTManager:
    """Minimal JWT implementation (HS256) — compact JWS, base64url without padding.

    The secret, lifetime and issuer are constructor arguments so that two
    managers with different secrets can coexist in one process.
    """

    def __init__(self, secret: str, expiry_hours: int = 24, issuer: str = "feedpulse") -> None:
        if not secret:
            msg = "JWT secret must not be empty"
            raise ValueError(msg)
        self._secret: str = secret
        self._expiry_hours: int = expiry_hours
        self._issuer: str = issuer

    @property
    def expiry_seconds(self) -> int:
        return self._expiry_hours * 3600

    def create_token(
        self,
        subject: str,
        extra_claims: dict[str, Any] | None = None,
        now: int | None = None,
    ) -> str:
        """Create a signed JWT token."""
        issued = int(time.time()) if now is None else now
        payload: dict[str, Any] = {}
        if extra_claims:
            payload.update(extra_claims)
        payload.update(
            {
                "sub": subject,
                "iss": self._issuer,
                "iat": issued,
                "nbf": issued,
                "exp": issued + self.expiry_seconds,
            }
        )

        header = self._b64url_encode(
            json.dumps({"alg": JWT_ALGORITHM, "typ": "JWT"}).encode()
        )
        body = self._b64url_encode(json.dumps(payload, separators=(",", ":")).encode())
        signature = self._sign(f"{header}.{body}")

        return f"{header}.{body}.{signature}"

    def verify_token(self, token: str, now: int | None = None) -> dict[str, Any] | None:
        """Verify a JWT token and return the payload, or None if invalid."""
        parts = token.split(".")
        if len(parts) != 3:
            return None

        header_b64, body_b64, sig = parts
        expected_sig = self._sign(f"{header_b64}.{body_b64}")

        if not hmac.compare_digest(sig, expected_sig):
            log.warning("jwt_invalid_signature")
            return None

        try:
            header = json.loads(self._b64url_decode(header_b64))
            payload = json.loads(self._b64url_decode(body_b64))
        except (json.JSONDecodeError, ValueError):
            log.warning("jwt_decode_error")
            return None

        if not isinstance(header, dict) or header.get("alg") != JWT_ALGORITHM:
            log.warning("jwt_unexpected_algorithm")
            return None
        if not isinstance(payload, dict):
            log.warning("jwt_decode_error")
            return None

        if payload.get("iss") != self._issuer:
            log.warning("jwt_wrong_issuer", iss=payload.get("iss"))
            return None

        current = int(time.time()) if now is None else now
        try:
            exp = int(payload.get("exp", 0))
            nbf = int(payload.get("nbf", 0))
        except (TypeError, ValueError):
            log.warning("jwt_decode_error")
            return None

        if current >= exp:
            log.debug("jwt_expired", sub=payload.get("sub"))
            return None
        if current < nbf:
            log.debug("jwt_not_yet_valid", sub=payload.get("sub"))
            return None

        return payload

    def _sign(self, message: str) -> str:
        sig_bytes = hmac.new(
            self._secret.encode(),
            message.encode(),
            hashlib.sha256,
        ).digest()
        return self._b64url_encode(sig_bytes)

    @staticmethod
    def _b64url_encode(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

    @staticmethod
    def _b64url_decode(s: str) -> bytes:
        padding = 4 - len(s) % 4
        if padding != 4:
            s += "=" * padding
        return base64.urlsafe_b64decode(s)


# ── Token Issuer ───────────────────────────────────────────────────


class TokenIssuer:
    """Mint, validate and refresh tenant-aware tokens.

    Issuance resolves the tenant through the team resolver, so an invited
    collaborator receives the owner's tenant id and its membership role. A
    feature snapshot is embedded only when the tenant has an active
    subscription; lacking one never blocks a login.
    """

    def __init__(
        self,
        jwt_manager: JWTManager,
        accounts: BaseAccountRepository,
        team_resolver: TeamResolver,
        subscriptions: BaseSubscriptionRepository,
    ) -> None:
        self._jwt = jwt_manager
        self._accounts = accounts
        self._team_resolver = team_resolver
        self._subscriptions = subscriptions

    @property
    def expires_in(self) -> int:
        return self._jwt.expiry_seconds

    async def build_claims(self, account: Account) -> Claims:
        tenant_id, role = await self._resolve_tenant(account.account_id)
        features = await self._feature_snapshot(tenant_id)
        return Claims(
            account_id=tenant_id,
            member_id=account.account_id,
            name=account.display_name,
            email=account.email,
            role=role,
            features=features,
        )

    async def issue_token(self, account: Account) -> str:
        claims = await self.build_claims(account)
        token = self._jwt.create_token(account.account_id, claims.to_payload())
        log.info(
            "token_issued",
            member_id=claims.member_id,
            tenant_id=claims.account_id,
            role=claims.role.value,
            has_features=claims.features is not None,
        )
        return token

    def validate_token(self, token: str) -> Claims:
        """Return the claims of a valid token; raise TokenInvalidError otherwise."""
        payload = self._jwt.verify_token(token)
        if payload is None:
            raise TokenInvalidError(MSG_UNAUTHORIZED)

        try:
            return Claims.from_payload(payload)
        except (KeyError, TypeError, ValueError):
            log.warning("jwt_claims_malformed", sub=payload.get("sub"))
            raise TokenInvalidError(MSG_UNAUTHORIZED) from None

    async def refresh_token(self, old_token: str) -> str:
        """Re-issue from the current account record; stale roles and plans are replaced."""
        claims = self.validate_token(old_token)
        account = await self._accounts.find_by_id(claims.member_id)
        if account is None or not account.is_active:
            log.warning("token_refresh_rejected", member_id=claims.member_id)
            raise TokenInvalidError(MSG_UNAUTHORIZED)
        return await self.issue_token(account)

    async def _resolve_tenant(self, identity_id: str) -> tuple[str, MemberRole]:
        try:
            return await self._team_resolver.resource_tenant_for(identity_id)
        except Exception as exc:
            log.warning("token_membership_lookup_failed", member_id=identity_id, error=str(exc))
            return identity_id, MemberRole.OWNER

    async def _feature_snapshot(self, tenant_id: str) -> FeatureSnapshot | None:
        try:
            subscription = await self._subscriptions.find_by_account_id(tenant_id)
        except Exception as exc:
            log.warning("token_subscription_lookup_failed", tenant_id=tenant_id, error=str(exc))
            return None

        if subscription is None or not subscription.is_active(utcnow()):
            return None
        return FeatureSnapshot.from_plan(subscription.plan)
