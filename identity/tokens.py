"""
Identity & Token Manager — JWT credentials for ledger stakeholders.

Access and refresh tokens are signed with distinct secrets (python-jose).
Every token carries iss / aud / jti / typ; access tokens also carry a
snapshot of the stakeholder's role and verified flag at issuance.

Verification order: signature and structure, expiry, token type, then the
revocation set. An unreachable revocation store degrades verification to
structural validity and logs a warning.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from common.errors import (
    AppError,
    InvalidRefreshToken,
    RevocationStoreUnavailable,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from identity.revocation import MemoryRevocationStore, RevocationStore
from ledger.models import Role, Stakeholder, normalize_address

logger = logging.getLogger(__name__)

ISSUER = "pharmachain-api"
AUDIENCE = "pharmachain-client"

ACCESS = "access"
REFRESH = "refresh"
CHALLENGE = "challenge"

CHALLENGE_TTL = timedelta(minutes=5)
CHALLENGE_TEMPLATE = (
    "Sign in to PharmaChain\n"
    "Address: {address}\n"
    "Nonce: {nonce}\n"
    "Issued: {issued}"
)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # access token lifetime, seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenType": "bearer",
            "expiresIn": self.expires_in,
        }


@dataclass
class Claims:
    """Verified token contents."""
    subject: str
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime
    role: Optional[Role] = None
    is_verified: Optional[bool] = None
    name: Optional[str] = None


@dataclass
class Challenge:
    token: str
    message: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "challenge": self.token,
            "message": self.message,
            "expiresAt": self.expires_at.isoformat(),
        }


def _parse_role(value: Any) -> Optional[Role]:
    try:
        return Role(value)
    except ValueError:
        return None


class TokenManager:

    def __init__(
        self,
        secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(days=7),
        revocations: Optional[RevocationStore] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if secret == refresh_secret:
            raise ValueError("Access and refresh secrets must differ")
        self._secret = secret
        self._refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.revocations = revocations if revocations is not None else MemoryRevocationStore()
        self._clock = clock

    # ── Issue ────────────────────────────────────────────────────────────────

    def _encode(self, claims: Dict[str, Any], token_type: str, ttl: timedelta, secret: str) -> str:
        now = self._clock()
        to_encode = dict(claims)
        to_encode.update({
            "iss": ISSUER,
            "aud": AUDIENCE,
            "typ": token_type,
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        })
        return jwt.encode(to_encode, secret, algorithm=self.algorithm)

    def issue(self, subject: str, role: Role, claims: Optional[Dict[str, Any]] = None) -> TokenPair:
        """Access + refresh token pair for ``subject`` with a role snapshot."""
        subject = normalize_address(subject)
        extra = dict(claims or {})
        extra.update({"sub": subject, "role": Role(role).value})
        access = self._encode(extra, ACCESS, self.access_ttl, self._secret)
        refresh = self._encode({"sub": subject}, REFRESH, self.refresh_ttl, self._refresh_secret)
        return TokenPair(access, refresh, int(self.access_ttl.total_seconds()))

    def issue_for(self, stakeholder: Stakeholder) -> TokenPair:
        return self.issue(
            stakeholder.address,
            stakeholder.role,
            {"isVerified": stakeholder.is_verified, "name": stakeholder.name},
        )

    # ── Verify ───────────────────────────────────────────────────────────────

    def _decode(self, token: str, secret: str, verify_exp: bool = True) -> Dict[str, Any]:
        return jwt.decode(
            token,
            secret,
            algorithms=[self.algorithm],
            audience=AUDIENCE,
            issuer=ISSUER,
            options={"verify_exp": verify_exp},
        )

    @staticmethod
    def _to_claims(payload: Dict[str, Any]) -> Claims:
        try:
            return Claims(
                subject=str(payload["sub"]),
                token_type=str(payload["typ"]),
                jti=str(payload["jti"]),
                issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
                role=_parse_role(payload.get("role")),
                is_verified=payload.get("isVerified"),
                name=payload.get("name"),
            )
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("Token is missing required claims")

    def _is_revoked(self, jti: str) -> bool:
        try:
            return self.revocations.contains(jti)
        except RevocationStoreUnavailable:
            logger.warning("Revocation store unreachable — accepting token %s on structure alone", jti)
            return False

    def verify(self, token: str, expected_type: str = ACCESS) -> Claims:
        secret = self._refresh_secret if expected_type == REFRESH else self._secret
        try:
            payload = self._decode(token, secret)
        except ExpiredSignatureError:
            raise TokenExpired()
        except JWTError:
            raise TokenInvalid()

        claims = self._to_claims(payload)
        if claims.token_type != expected_type:
            raise TokenInvalid(f"Expected a {expected_type} token")
        if self._is_revoked(claims.jti):
            raise TokenRevoked()
        return claims

    # ── Revoke ───────────────────────────────────────────────────────────────

    def revoke(self, token: str, subject: Optional[str] = None) -> bool:
        """
        Add the token's jti to the revocation set until its natural expiry.
        Idempotent. Returns False when the token had already expired.
        With ``subject`` given, a token issued to anyone else is TokenInvalid.
        """
        payload = None
        for secret in (self._secret, self._refresh_secret):
            try:
                payload = self._decode(token, secret, verify_exp=False)
                break
            except JWTError:
                continue
        if payload is None:
            raise TokenInvalid()

        claims = self._to_claims(payload)
        if subject is not None and claims.subject.lower() != subject.lower():
            raise TokenInvalid("Token was not issued to this subject")
        if claims.expires_at <= self._clock():
            return False
        self.revocations.add(claims.jti, claims.expires_at, subject=claims.subject)
        logger.info("Revoked %s token %s for %s", claims.token_type, claims.jti, claims.subject)
        return True

    # ── Refresh ──────────────────────────────────────────────────────────────

    def refresh(self, refresh_token: str, lookup: Callable[[str], Stakeholder]) -> TokenPair:
        """
        New access token for the holder of a valid refresh token. The subject
        must still exist; the role and verified flag come from ``lookup``.
        """
        try:
            claims = self.verify(refresh_token, expected_type=REFRESH)
        except (TokenInvalid, TokenExpired, TokenRevoked):
            raise InvalidRefreshToken()

        try:
            stakeholder = lookup(claims.subject)
        except AppError as e:
            if e.status_code == 404:
                raise InvalidRefreshToken("Stakeholder no longer exists")
            raise

        pair = self.issue_for(stakeholder)
        logger.info("Token refreshed for %s", stakeholder.address)
        return TokenPair(pair.access_token, refresh_token, pair.expires_in)

    # ── Login challenge ──────────────────────────────────────────────────────

    def issue_challenge(self, address: str) -> Challenge:
        address = normalize_address(address)
        now = self._clock()
        message = CHALLENGE_TEMPLATE.format(
            address=address,
            nonce=uuid.uuid4().hex,
            issued=now.replace(microsecond=0).isoformat(),
        )
        token = self._encode({"sub": address, "msg": message}, CHALLENGE, CHALLENGE_TTL, self._secret)
        return Challenge(token=token, message=message, expires_at=now + CHALLENGE_TTL)

    def verify_challenge(self, challenge_token: str, address: str) -> str:
        """Message text of a live challenge issued to ``address``."""
        try:
            payload = self._decode(challenge_token, self._secret)
        except ExpiredSignatureError:
            raise TokenExpired("Login challenge expired")
        except JWTError:
            raise TokenInvalid("Invalid login challenge")
        if payload.get("typ") != CHALLENGE or payload.get("sub") != normalize_address(address):
            raise TokenInvalid("Login challenge does not match address")
        message = payload.get("msg")
        if not isinstance(message, str):
            raise TokenInvalid("Invalid login challenge")
        return message
