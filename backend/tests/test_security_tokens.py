from datetime import timedelta

from jose import jwt

from clinic_auth.config import settings
from clinic_auth.core.security import (
    create_access_token,
    decode_access_token,
    decode_token,
    generate_opaque_token,
    hash_token,
    token_expiry,
    verify_password,
    get_password_hash,
)


def test_access_token_round_trip():
    token = create_access_token({"sub": "7", "username": "alice", "role": "staff"})
    payload = decode_access_token(token)
    assert payload is not None
    assert payload["sub"] == "7"
    assert payload["typ"] == "access"
    assert payload["jti"]


def test_access_token_rejects_other_typ():
    token = jwt.encode({"sub": "1", "typ": "refresh"}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    assert decode_token(token) is not None
    assert decode_access_token(token) is None


def test_expired_access_token_is_rejected():
    token = create_access_token({"sub": "3"}, expires_delta=timedelta(seconds=-5))
    assert decode_access_token(token) is None


def test_token_signed_with_other_key_is_rejected():
    forged = jwt.encode({"sub": "3", "typ": "access"}, "some-other-key", algorithm=settings.ALGORITHM)
    assert decode_access_token(forged) is None


def test_token_expiry_is_naive_utc():
    token = create_access_token({"sub": "3"}, expires_delta=timedelta(minutes=5))
    expiry = token_expiry(decode_access_token(token))
    assert expiry is not None
    assert expiry.tzinfo is None


def test_opaque_tokens_are_unique_and_hash_deterministically():
    first, second = generate_opaque_token(), generate_opaque_token()
    assert first != second
    assert hash_token(first) == hash_token(first)
    assert len(hash_token(first)) == 64
    assert hash_token(first) != first


def test_password_hash_verification():
    hashed = get_password_hash("s3cret-pass")
    assert verify_password("s3cret-pass", hashed)
    assert not verify_password("wrong", hashed)
    assert not verify_password("s3cret-pass", "not-a-bcrypt-hash")
