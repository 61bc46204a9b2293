import auth
from conftest import PASSWORD


def test_password_hash_and_verify_roundtrip():
    """A hashed password verifies, a different one does not."""
    password = "My_S3cret_pass"
    wrong_password = "other_pass"

    hashed = auth.get_password_hash(password)

    assert hashed != password
    assert auth.verify_password(password, hashed) is True
    assert auth.verify_password(wrong_password, hashed) is False


def test_create_and_verify_access_token_contains_sub_and_roles():
    data = {"sub": "waiter@example.com", "roles": ["waiter"]}

    token = auth.create_access_token(data)
    assert isinstance(token, str)
    # header.payload.signature
    assert len(token.split(".")) == 3

    payload = auth.verify_token(token)
    assert payload is not None
    assert payload["sub"] == data["sub"]
    assert payload["roles"] == data["roles"]
    assert "exp" in payload


def test_verify_token_returns_none_for_invalid_token():
    assert auth.verify_token("invalid.token.value") is None


def test_expired_token_is_rejected(monkeypatch):
    monkeypatch.setattr(auth, "ACCESS_TOKEN_EXPIRE_MINUTES", -1)
    token = auth.create_access_token({"sub": "late@example.com"})

    assert auth.verify_token(token) is None


def test_authenticate_user_by_email(db, seed):
    assert auth.authenticate_user(db, " Customer@Example.com ", PASSWORD).id == seed.customer.id
    assert auth.authenticate_user(db, seed.customer.email, "wrong-password") is None
    assert auth.authenticate_user(db, "nobody@example.com", PASSWORD) is None
