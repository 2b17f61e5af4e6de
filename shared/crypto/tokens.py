from __future__ import annotations
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

SigningKey = Union[str, rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]
VerificationKey = Union[str, rsa.RSAPublicKey, ec.EllipticCurvePublicKey]

# Claim carrying the principal, as issued by the account service
USER_ID_CLAIM = "userId"

_ASYMMETRIC_PREFIXES = ("RS", "PS", "ES")


def is_asymmetric(algorithm: str) -> bool:
    return algorithm.upper().startswith(_ASYMMETRIC_PREFIXES)


def load_public_key(pem: bytes) -> rsa.RSAPublicKey | ec.EllipticCurvePublicKey:
    key = serialization.load_pem_public_key(pem)
    if not isinstance(key, (rsa.RSAPublicKey, ec.EllipticCurvePublicKey)):
        raise TypeError(f"Expected RSA or EC public key, got {type(key).__name__}")
    return key


def load_private_key(pem: bytes) -> rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey:
    key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise TypeError(f"Expected RSA or EC private key, got {type(key).__name__}")
    return key


def load_verification_key(algorithm: str, secret: Optional[str], public_key_path: Optional[Path]) -> VerificationKey:
    """Pick the key that verifies tokens for ``algorithm``: a PEM public key for RS/PS/ES, the shared secret otherwise."""
    if is_asymmetric(algorithm):
        if public_key_path is None:
            raise ValueError(f"{algorithm} tokens need a public key file")
        return load_public_key(Path(public_key_path).expanduser().read_bytes())
    if not secret:
        raise ValueError(f"{algorithm} tokens need a shared secret")
    return secret


def issue_token(
    user_id: str,
    key: SigningKey,
    *,
    algorithm: str = "HS256",
    expires_in: Optional[int] = 7 * 24 * 3600,
    extra_claims: Optional[Dict[str, Any]] = None,
) -> str:
    """Mint a bearer token for ``user_id``. Development and test helper; production tokens come from the account service."""
    now = int(time.time())
    claims: Dict[str, Any] = {USER_ID_CLAIM: user_id, "iat": now}
    if expires_in is not None:
        claims["exp"] = now + expires_in
    if extra_claims:
        claims.update(extra_claims)
    return jwt.encode(claims, key, algorithm=algorithm)


def decode_token(token: str, key: VerificationKey, algorithm: str) -> Dict[str, Any]:
    """Verify signature and expiry; raises ``jwt.InvalidTokenError`` subclasses on failure."""
    return jwt.decode(token, key, algorithms=[algorithm])
