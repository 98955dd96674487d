"""
Unit tests for circulation.core.security – password hashing, JWT creation/decoding.
"""
from datetime import timedelta, datetime, timezone

from jose import jwt

from circulation.core.security import (
    hash_password,
    verify_password,
    create_access_token,
    decode_access_token,
)


# ─── Password hashing ──────────────────────────────────────────


class TestPasswordHashing:
    def test_hash_is_bcrypt(self):
        hashed = hash_password("mypassword")
        assert hashed != "mypassword"
        assert hashed.startswith("$2b$") or hashed.startswith("$2a$")

    def test_hashes_are_salted(self):
        assert hash_password("samepass") != hash_password("samepass")

    def test_verify(self):
        hashed = hash_password("correcthorse")
        assert verify_password("correcthorse", hashed) is True
        assert verify_password("wronghorse", hashed) is False
        assert verify_password("", hashed) is False


# ─── JWT tokens ─────────────────────────────────────────────────


class TestCreateAccessToken:
    def test_claims(self):
        token = create_access_token("uid-42", "librarian")
        payload = decode_access_token(token)
        assert payload["sub"] == "uid-42"
        assert payload["role"] == "librarian"
        assert isinstance(payload["jti"], str)

    def test_custom_expiration(self):
        token = create_access_token("user123", "member", expires_delta=timedelta(hours=2))
        payload = decode_access_token(token)
        exp = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
        diff = (exp - datetime.now(timezone.utc)).total_seconds()
        assert 7100 < diff < 7300

    def test_each_token_has_unique_jti(self):
        p1 = decode_access_token(create_access_token("user123", "member"))
        p2 = decode_access_token(create_access_token("user123", "member"))
        assert p1["jti"] != p2["jti"]


class TestDecodeAccessToken:
    def test_expired_token_returns_none(self):
        token = create_access_token("user123", "member", expires_delta=timedelta(seconds=-1))
        assert decode_access_token(token) is None

    def test_tampered_token_returns_none(self):
        token = create_access_token("user123", "member")
        tampered = token[:-1] + ("A" if token[-1] != "A" else "B")
        assert decode_access_token(tampered) is None

    def test_garbage_returns_none(self):
        assert decode_access_token("not.a.token") is None
        assert decode_access_token("") is None

    def test_wrong_secret_returns_none(self):
        token = jwt.encode({"sub": "user123"}, "wrong-secret-key", algorithm="HS256")
        assert decode_access_token(token) is None
