from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import jwt

from server.core.errors import InvalidCredential, Unauthenticated
from shared.crypto.tokens import USER_ID_CLAIM, VerificationKey, decode_token, load_verification_key
from shared.log import get_logger
from shared.utils import is_non_empty_str

if TYPE_CHECKING:
    from server.config import RelayConfig

logger = get_logger(__name__)


@dataclass(frozen=True)
class PresentedCredentials:
    """Tokens found on a connection attempt, one per presentation channel.

    Priority when several are present: handshake payload, then
    ``Authorization: Bearer`` header, then ``?token=`` query parameter.
    """
    handshake_token: Optional[str] = None
    header_token: Optional[str] = None
    query_token: Optional[str] = None

    def select(self) -> Optional[str]:
        for token in (self.handshake_token, self.header_token, self.query_token):
            if token:
                return token
        return None

    @property
    def channel(self) -> Optional[str]:
        if self.handshake_token:
            return "handshake"
        if self.header_token:
            return "header"
        if self.query_token:
            return "query"
        return None


class PrincipalVerifier:
    """Turns a bearer credential into a verified user id. Pure: no I/O after construction."""

    def __init__(self, key: VerificationKey, algorithm: str = "HS256"):
        self.key = key
        self.algorithm = algorithm

    @classmethod
    def from_config(cls, config: "RelayConfig") -> "PrincipalVerifier":
        public_key_path = Path(config.jwt_public_key_path) if config.jwt_public_key_path else None
        key = load_verification_key(config.jwt_algorithm, config.jwt_secret, public_key_path)
        return cls(key, config.jwt_algorithm)

    def verify(self, credentials: PresentedCredentials) -> str:
        """
        Raises:
            Unauthenticated: no channel carried a token
            InvalidCredential: the chosen token failed verification
        """
        token = credentials.select()
        if token is None:
            raise Unauthenticated()
        user_id = self.verify_token(token)
        logger.debug("Verified token from %s channel", credentials.channel, extra={"user_id": user_id})
        return user_id

    def verify_token(self, token: str) -> str:
        try:
            claims = decode_token(token, self.key, self.algorithm)
        except jwt.InvalidTokenError as e:
            raise InvalidCredential(str(e)) from e

        user_id = claims.get(USER_ID_CLAIM) or claims.get("sub")
        if not is_non_empty_str(user_id):
            raise InvalidCredential(f"Token has no {USER_ID_CLAIM} claim")
        return user_id
