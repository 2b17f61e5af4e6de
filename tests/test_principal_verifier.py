import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from server.config import RelayConfig
from server.core.errors import InvalidCredential, Unauthenticated
from server.identity.verifier import PresentedCredentials, PrincipalVerifier
from shared.crypto.tokens import issue_token
from tests.support import SECRET, make_token


@pytest.fixture
def verifier() -> PrincipalVerifier:
    return PrincipalVerifier(SECRET)


def test_no_token_in_any_channel_is_unauthenticated(verifier):
    with pytest.raises(Unauthenticated) as exc:
        verifier.verify(PresentedCredentials())
    assert exc.value.reason == "Authentication error: No token provided"


def test_bad_signature_is_invalid_credential(verifier):
    token = make_token("alice", secret="someone-else")
    with pytest.raises(InvalidCredential) as exc:
        verifier.verify(PresentedCredentials(handshake_token=token))
    assert exc.value.reason == "Authentication error: Invalid token"


def test_malformed_token_is_invalid_credential(verifier):
    with pytest.raises(InvalidCredential):
        verifier.verify(PresentedCredentials(header_token="not.a.jwt"))


def test_expired_token_is_invalid_credential(verifier):
    token = make_token("alice", expires_in=-60)
    with pytest.raises(InvalidCredential):
        verifier.verify_token(token)


def test_channel_priority_handshake_then_header_then_query(verifier):
    creds = PresentedCredentials(
        handshake_token=make_token("from-handshake"),
        header_token=make_token("from-header"),
        query_token=make_token("from-query"),
    )
    assert verifier.verify(creds) == "from-handshake"
    assert creds.channel == "handshake"

    creds = PresentedCredentials(header_token=make_token("from-header"), query_token=make_token("from-query"))
    assert verifier.verify(creds) == "from-header"

    creds = PresentedCredentials(query_token=make_token("from-query"))
    assert verifier.verify(creds) == "from-query"
    assert creds.channel == "query"


def test_first_present_channel_is_used_even_if_invalid(verifier):
    creds = PresentedCredentials(handshake_token="garbage", header_token=make_token("alice"))
    with pytest.raises(InvalidCredential):
        verifier.verify(creds)


def test_sub_claim_is_accepted_when_user_id_missing(verifier):
    token = jwt.encode({"sub": "alice"}, SECRET, algorithm="HS256")
    assert verifier.verify_token(token) == "alice"


def test_token_without_principal_is_rejected(verifier):
    token = jwt.encode({"role": "admin"}, SECRET, algorithm="HS256")
    with pytest.raises(InvalidCredential):
        verifier.verify_token(token)


def test_rs256_with_public_key_file(tmp_path):
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    key_file = tmp_path / "jwt.pub"
    key_file.write_bytes(public_pem)

    config = RelayConfig(jwt_algorithm="RS256", jwt_public_key_path=str(key_file))
    verifier = PrincipalVerifier.from_config(config)

    token = issue_token("alice", private_key, algorithm="RS256")
    assert verifier.verify_token(token) == "alice"

    with pytest.raises(InvalidCredential):
        verifier.verify_token(make_token("alice"))
