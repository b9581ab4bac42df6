"""
auth/tokens.py -- Stateless bearer tokens: issue, verify, rotate, revoke.

Security design decisions:
  JWT: python-jose with HS256, signed with SECRET_KEY (>= 256 bits). Issuance
       and verification are two methods of the same TokenService sharing one
       claims schema (auth.models.Claims) and one key, so the two paths cannot
       drift apart in encoding or algorithm.

  Claims: sub, tid, kind, dev, jti, exp, typ (+ iat). typ separates access
       tokens (15 minutes) from refresh tokens (30 days); a refresh token
       presented as an access token, or vice versa, is rejected.

  Expiry: checked against the injected clock rather than jose's wall clock
       (verify_exp disabled in jose), so expiry is testable without sleeping.

  Refresh tokens: every issued jti is persisted through RevocationStore.
       rotate() verifies the presented token, then consumes it and records
       the successor in one conditional transaction -- of concurrent
       rotations of the same token exactly one wins; the rest see
       TokenRevoked.

  Errors: TokenExpired / TokenRevoked / InvalidSignature / MalformedToken are
       distinct internally (logged), and collapse to one public
       "invalid_token" response at the HTTP edge.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import secrets
import uuid

from jose import JWTError, jwt

from auth.errors import InvalidSignature, MalformedToken, TokenExpired, TokenRevoked
from auth.models import Claims, RefreshTokenRecord, TokenPair, User
from auth.revocation import RevocationStore
from core.clock import Clock, from_epoch, utcnow

logger = logging.getLogger("tenantauth.auth.tokens")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ("sub", "kind", "jti", "exp", "typ")


class TokenService:
    """Issues and verifies access/refresh pairs.

    Usage:
        tokens = TokenService(secret_key, RevocationStore(engine))
        pair = tokens.issue(user, tenant_id=1, device_id="ios-1")
        claims = tokens.verify_access(pair.access_token)
        new_pair = tokens.rotate(pair.refresh_token)
    """

    def __init__(
        self,
        secret_key: str,
        revocations: RevocationStore,
        *,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 30 * 24 * 60 * 60,
        clock: Clock = utcnow,
    ) -> None:
        self._secret_key = secret_key
        self.revocations = revocations
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, revocations: RevocationStore, clock: Clock = utcnow) -> TokenService:
        return cls(
            settings.secret_key,
            revocations,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, principal: User, tenant_id: int | None, device_id: str | None = None) -> TokenPair:
        """Issue a fresh pair that starts a new refresh-token family."""
        pair, record = self._mint(principal.id, tenant_id, principal.kind, device_id, family_id=uuid.uuid4().hex)
        self.revocations.persist(record)
        return pair

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_access(self, token: str) -> Claims:
        return self._decode(token, ACCESS)

    def verify_refresh(self, token: str, *, allow_expired: bool = False) -> Claims:
        """Verify signature, expiry, type and non-revocation of a refresh token."""
        claims = self._decode(token, REFRESH, allow_expired=allow_expired)
        if self.revocations.is_revoked(claims.jti):
            logger.info("Refresh token %s rejected: revoked", _short(claims.jti))
            raise TokenRevoked()
        return claims

    # ------------------------------------------------------------------
    # Rotate / revoke
    # ------------------------------------------------------------------

    def rotate(self, refresh_token: str, principal: User | None = None) -> TokenPair:
        """Exchange a refresh token for a new pair, consuming the old one.

        principal, when given, is the freshly loaded account; its current
        kind goes into the new claims. Otherwise the presented claims are
        carried forward.
        """
        claims = self.verify_refresh(refresh_token)
        record = self.revocations.get(claims.jti)
        if record is None:
            raise TokenRevoked()
        kind = principal.kind if principal is not None else claims.kind
        pair, successor = self._mint(claims.principal_id, claims.tid, kind, claims.dev, family_id=record.family_id)
        if not self.revocations.rotate(claims.jti, successor):
            logger.warning(
                "Refresh token %s rejected: already consumed (concurrent or replayed rotation)", _short(claims.jti)
            )
            raise TokenRevoked()
        return pair

    def revoke(self, refresh_token: str) -> int:
        """Logout: revoke the whole family the presented refresh token belongs to.

        Expired tokens are accepted here so a client can always log out.
        """
        claims = self._decode(refresh_token, REFRESH, allow_expired=True)
        record = self.revocations.get(claims.jti)
        if record is None:
            return 0
        return self.revocations.revoke_family(record.family_id)

    def revoke_all(self, principal_id: int) -> int:
        count = self.revocations.revoke_all(principal_id)
        logger.info("Revoked %d refresh tokens for principal %s", count, principal_id)
        return count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mint(
        self,
        principal_id: int,
        tenant_id: int | None,
        kind: str,
        device_id: str | None,
        *,
        family_id: str,
    ) -> tuple[TokenPair, RefreshTokenRecord]:
        now = self._clock()
        iat = int(now.timestamp())
        access_exp = iat + self.access_ttl_seconds
        refresh_exp = iat + self.refresh_ttl_seconds
        refresh_jti = secrets.token_hex(16)
        base = {"sub": str(principal_id), "tid": tenant_id, "kind": kind, "dev": device_id, "iat": iat}
        access = jwt.encode(
            {**base, "jti": secrets.token_hex(16), "exp": access_exp, "typ": ACCESS},
            self._secret_key,
            algorithm=_ALGORITHM,
        )
        refresh = jwt.encode(
            {**base, "jti": refresh_jti, "exp": refresh_exp, "typ": REFRESH},
            self._secret_key,
            algorithm=_ALGORITHM,
        )
        record = RefreshTokenRecord(
            jti=refresh_jti,
            principal_id=principal_id,
            tenant_id=tenant_id,
            device_id=device_id,
            family_id=family_id,
            expires_at=from_epoch(refresh_exp),
            created_at=now,
        )
        pair = TokenPair(
            access_token=access,
            refresh_token=refresh,
            expires_in=self.access_ttl_seconds,
            refresh_jti=refresh_jti,
        )
        return pair, record

    def _decode(self, token: str, expected_type: str, *, allow_expired: bool = False) -> Claims:
        # Parse first without the key: garbage input is "malformed", not "bad signature".
        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            logger.info("Token rejected: malformed")
            raise MalformedToken() from exc
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError as exc:
            logger.info("Token rejected: signature verification failed")
            raise InvalidSignature() from exc

        claims = _to_claims(payload)
        if claims.typ != expected_type:
            logger.info("Token rejected: expected typ=%s, got typ=%s", expected_type, claims.typ)
            raise MalformedToken()
        if not allow_expired and claims.exp <= self._clock().timestamp():
            logger.info("Token %s rejected: expired", _short(claims.jti))
            raise TokenExpired()
        return claims


def _to_claims(payload: dict) -> Claims:
    if any(payload.get(name) in (None, "") for name in _REQUIRED_CLAIMS):
        raise MalformedToken()
    try:
        int(payload["sub"])
        exp = int(payload["exp"])
        tid = payload.get("tid")
        tid = int(tid) if tid is not None else None
        iat = payload.get("iat")
        iat = int(iat) if iat is not None else None
    except (TypeError, ValueError) as exc:
        raise MalformedToken() from exc
    return Claims(
        sub=str(payload["sub"]),
        tid=tid,
        kind=str(payload["kind"]),
        dev=payload.get("dev"),
        jti=str(payload["jti"]),
        exp=exp,
        typ=str(payload["typ"]),
        iat=iat,
    )


def _short(jti: str) -> str:
    """Log-safe jti prefix."""
    return jti[:8]
