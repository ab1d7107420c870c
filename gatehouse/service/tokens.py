from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import InvalidTokenError, TokenExpiredError
from gatehouse.storage.models import Claims, TokenPair

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_HEADER = {"alg": "HS256", "typ": "JWT"}


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a raw token, the only form sessions store."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


class TokenCodec:
    """Issues and validates compact HS256 tokens.

    Access and refresh tokens are signed with separate keys. Every decode
    failure raises ``InvalidTokenError`` with the same message; the only
    distinguishable case is ``TokenExpiredError``, reported once the
    signature has been proven.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: int,
        refresh_ttl: int,
        leeway: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.access_secret = access_secret
        self.refresh_secret = refresh_secret
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "TokenCodec":
        return cls(
            access_secret=settings.access_token_secret,
            refresh_secret=settings.refresh_token_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=settings.access_token_ttl_seconds,
            refresh_ttl=settings.refresh_token_ttl_seconds,
            leeway=settings.token_leeway_seconds,
            **kwargs,
        )

    def now(self) -> int:
        return int(self._clock())

    def issue(
        self,
        claims: dict[str, Any],
        secret: str,
        ttl: int,
        *,
        now: Optional[int] = None,
    ) -> str:
        """Sign ``claims`` after stamping the registered fields.

        ``claims`` must carry ``sub``, ``sid`` and ``token_type``; ``jti``,
        ``iat``, ``exp``, ``iss`` and ``aud`` are filled in here.
        """
        issued_at = self.now() if now is None else now
        stamped = Claims(
            sub=claims["sub"],
            sid=claims["sid"],
            jti=claims.get("jti") or uuid.uuid4().hex,
            iat=issued_at,
            exp=issued_at + ttl,
            iss=self.issuer,
            aud=self.audience,
            token_type=claims["token_type"],
            email=claims.get("email"),
            username=claims.get("username"),
        )
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(stamped.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_sign(secret, signing_input)}"

    def issue_pair(
        self,
        account_id: str,
        session_id: str,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        now: Optional[int] = None,
    ) -> TokenPair:
        now = self.now() if now is None else now
        access = self.issue(
            {
                "sub": account_id,
                "sid": session_id,
                "token_type": ACCESS,
                "email": email,
                "username": username,
            },
            self.access_secret,
            self.access_ttl,
            now=now,
        )
        refresh = self.issue(
            {"sub": account_id, "sid": session_id, "token_type": REFRESH},
            self.refresh_secret,
            self.refresh_ttl,
            now=now,
        )
        return TokenPair(
            access_token=access, refresh_token=refresh, expires_in=self.access_ttl
        )

    def decode(self, token: str, secret: str, token_type: str) -> Claims:
        if not isinstance(token, str):
            raise InvalidTokenError()
        parts = token.split(".")
        if len(parts) != 3:
            raise InvalidTokenError()
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(_decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise InvalidTokenError()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except ValueError:
            logger.warning("jwt_payload_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(payload, dict):
            raise InvalidTokenError()
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise InvalidTokenError()
        if payload.get("token_type") != token_type:
            raise InvalidTokenError()

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidTokenError()
        if self._clock() > exp + self.leeway:
            raise TokenExpiredError()

        try:
            return Claims(
                sub=str(payload["sub"]),
                sid=str(payload["sid"]),
                jti=str(payload["jti"]),
                iat=int(payload["iat"]),
                exp=int(exp),
                iss=payload["iss"],
                aud=payload["aud"],
                token_type=token_type,
                email=payload.get("email"),
                username=payload.get("username"),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError() from None

    def decode_access(self, token: str) -> Claims:
        return self.decode(token, self.access_secret, ACCESS)

    def decode_refresh(self, token: str) -> Claims:
        return self.decode(token, self.refresh_secret, REFRESH)
