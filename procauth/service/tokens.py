from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from procauth.config import Settings
from procauth.logging import get_logger
from procauth.service.errors import TokenExpired, TokenInvalid
from procauth.storage.models import Clock, utcnow

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    MFA_CHALLENGE = "mfa_challenge"
    MFA_SETUP = "mfa_setup"


class TokenCodec:
    """HS256 JWT encoding with a mandatory ``token_type`` claim.

    A token of one type never decodes as another: the expected type is part of
    every ``decode`` call.
    """

    def __init__(self, settings: Settings, *, clock: Clock = utcnow) -> None:
        self.secret = settings.jwt_secret.encode()
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self.secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self,
        token_type: TokenType,
        subject: str,
        *,
        expires_at: datetime,
        session_id: Optional[str] = None,
        jti: Optional[str] = None,
        claims: Optional[Dict[str, Any]] = None,
    ) -> str:
        payload: Dict[str, Any] = dict(claims or {})
        payload.update(
            {
                "iss": self.issuer,
                "aud": self.audience,
                "sub": subject,
                "token_type": token_type.value,
                "jti": jti or str(uuid.uuid4()),
                "iat": int(self.clock().timestamp()),
                "exp": int(expires_at.timestamp()),
            }
        )
        if session_id:
            payload["sid"] = session_id
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, expected_type: TokenType) -> Dict[str, Any]:
        """Return the verified payload or raise ``TokenInvalid``/``TokenExpired``."""
        if not token or not isinstance(token, str):
            raise TokenInvalid()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid()

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid()
        # Pin the algorithm so a forged header cannot downgrade verification
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenInvalid()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalid()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid()
        if not isinstance(payload, dict):
            raise TokenInvalid()

        if payload.get("iss") != self.issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalid()
        if payload.get("token_type") != expected_type.value:
            logger.info(
                "jwt_type_mismatch",
                expected=expected_type.value,
                actual=payload.get("token_type"),
            )
            raise TokenInvalid("Token type not accepted here")
        if not payload.get("sub"):
            raise TokenInvalid()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid()
        if exp_ts <= self.clock().timestamp():
            raise TokenExpired()
        return payload
