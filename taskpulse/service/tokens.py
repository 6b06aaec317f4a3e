from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from taskpulse.config import Settings
from taskpulse.logging import get_logger
from taskpulse.service.errors import ExpiredCredentialError, MalformedCredentialError
from taskpulse.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
CREDENTIAL_KINDS = (ACCESS, REFRESH)


@dataclass(frozen=True)
class CredentialClaims:
    subject_id: str
    kind: str
    issued_at: datetime
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class IssuedCredential:
    value: str
    claims: CredentialClaims


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class CredentialCodec:
    """Signs and verifies access and refresh credentials (HS256 JWT shape).

    The codec holds no state beyond its key and lifetimes; whether a refresh
    credential is still usable is decided by the session registry.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("credential secret must not be empty")
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._ttls = {ACCESS: access_ttl, REFRESH: refresh_ttl}
        self._clock = clock or utcnow

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> "CredentialCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            clock=clock,
        )

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def mint(self, subject_id: str, kind: str) -> IssuedCredential:
        if kind not in self._ttls:
            raise ValueError(f"unknown credential kind: {kind!r}")
        issued_ts = int(self._clock().timestamp())
        expires_ts = issued_ts + int(self._ttls[kind].total_seconds())
        jti = str(uuid.uuid4())
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject_id,
            "token_type": kind,
            "jti": jti,
            "iat": issued_ts,
            "exp": expires_ts,
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        value = f"{signing_input}.{self._sign(signing_input)}"
        claims = CredentialClaims(
            subject_id=subject_id,
            kind=kind,
            issued_at=datetime.fromtimestamp(issued_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_ts, tz=timezone.utc),
            jti=jti,
        )
        return IssuedCredential(value=value, claims=claims)

    def issue(self, subject_id: str, kind: str) -> str:
        return self.mint(subject_id, kind).value

    def verify(self, value: str) -> CredentialClaims:
        """Decode ``value`` or raise.

        Expiry is only reported once the signature, issuer and audience have
        checked out, so a forged value never reads as merely expired.
        """
        if not value or not isinstance(value, str):
            raise MalformedCredentialError()
        try:
            header_b64, payload_b64, sig_b64 = value.split(".")
        except ValueError:
            raise MalformedCredentialError()

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("credential_header_decode_failed")
            raise MalformedCredentialError()
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "credential_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedCredentialError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise MalformedCredentialError()

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("credential_payload_decode_failed", error=str(exc))
            raise MalformedCredentialError()
        if not isinstance(payload, dict):
            raise MalformedCredentialError()
        if payload.get("iss") != self.issuer:
            raise MalformedCredentialError()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise MalformedCredentialError()

        kind = payload.get("token_type")
        subject_id = payload.get("sub")
        if kind not in CREDENTIAL_KINDS or not isinstance(subject_id, str) or not subject_id:
            raise MalformedCredentialError()
        exp = payload.get("exp")
        if isinstance(exp, bool):
            raise MalformedCredentialError()
        try:
            exp_ts = float(exp)
            iat_ts = float(payload.get("iat", exp_ts))
        except (TypeError, ValueError):
            raise MalformedCredentialError()

        if exp_ts <= self._clock().timestamp():
            raise ExpiredCredentialError()
        return CredentialClaims(
            subject_id=subject_id,
            kind=kind,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=str(payload.get("jti", "")),
        )


__all__ = [
    "ACCESS",
    "REFRESH",
    "CredentialClaims",
    "CredentialCodec",
    "IssuedCredential",
]
