"""
Tests for legacy password digests, XSRF values and opaque tokens.
"""
import hashlib

import pytest

from objdb.errors import InvalidArgument
from objdb.hashing import (
    XSRF_LENGTH,
    derive_opaque_token,
    derive_password_digest,
    derive_xsrf,
    legacy_salt,
    verify_xsrf,
)


SECRET = "TestSalt"


def test_password_digest_formula():
    """Digest is sha1(salt + LOGIN + namespace + password)."""
    expected = hashlib.sha1(f"{SECRET}ADMINdemosecret1".encode("utf-8")).hexdigest()
    assert derive_password_digest("admin", "secret1", "demo", secret=SECRET) == expected


def test_password_digest_login_case_insensitive():
    assert derive_password_digest("Admin", "pw", "demo", secret=SECRET) == \
        derive_password_digest("ADMIN", "pw", "demo", secret=SECRET)


def test_password_digest_depends_on_namespace_and_password():
    base = derive_password_digest("admin", "pw", "demo", secret=SECRET)
    assert derive_password_digest("admin", "pw", "other", secret=SECRET) != base
    assert derive_password_digest("admin", "pw2", "demo", secret=SECRET) != base


def test_password_digest_is_lowercase_hex():
    digest = derive_password_digest("admin", "pw", "demo")
    assert len(digest) == 40
    assert digest == digest.lower()
    int(digest, 16)


def test_legacy_salt_uses_configured_secret(monkeypatch):
    from objdb import hashing

    monkeypatch.setattr(hashing.settings, "legacy_salt", "Configured")
    assert legacy_salt("tok", "demo", "demo") == "ConfiguredTOKdemodemo"


def test_xsrf_formula_and_length():
    token = "abcdef0123456789abcdef0123456789"
    expected = hashlib.sha1(f"{SECRET}{token.upper()}demodemo".encode("utf-8")).hexdigest()[:XSRF_LENGTH]
    value = derive_xsrf(token, "demo", secret=SECRET)
    assert value == expected
    assert len(value) == 22


def test_xsrf_is_deterministic():
    assert derive_xsrf("token", "demo") == derive_xsrf("token", "demo")
    assert derive_xsrf("token", "demo") != derive_xsrf("token", "other")


def test_verify_xsrf():
    value = derive_xsrf("token", "demo")
    assert verify_xsrf(value, "token", "demo") is True
    assert verify_xsrf("", "token", "demo") is False
    assert verify_xsrf(None, "token", "demo") is False
    assert verify_xsrf(value[:-1] + "x", "token", "demo") is False


@pytest.mark.parametrize("args", [
    (None, "pw", "demo"),
    ("admin", 123, "demo"),
    ("admin", "pw", None),
])
def test_password_digest_rejects_non_strings(args):
    with pytest.raises(InvalidArgument):
        derive_password_digest(*args)


def test_xsrf_rejects_non_strings():
    with pytest.raises(InvalidArgument):
        derive_xsrf(None, "demo")


def test_opaque_token_shape():
    token = derive_opaque_token()
    assert len(token) == 32
    int(token, 16)


def test_opaque_tokens_differ():
    tokens = {derive_opaque_token() for _ in range(50)}
    assert len(tokens) == 50


def test_opaque_token_seed_must_be_string():
    assert len(derive_opaque_token("seed")) == 32
    with pytest.raises(InvalidArgument):
        derive_opaque_token(42)
