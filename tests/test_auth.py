"""Tests for token signing and verification."""

import base64
import json

import pytest

from livebridge.auth import ANONYMOUS, TokenVerifier, _b64url_encode, _sign, identity_from_claims, sign_token
from livebridge.errors import AuthenticationError

from fakes import SECRET


class TestVerify:
    def test_valid_token_yields_email(self, verifier):
        """A freshly signed token verifies to its email."""
        token = sign_token("user@x.com", secret=SECRET)
        assert verifier.verify(token) == "user@x.com"

    def test_session_scoped_identity(self, verifier):
        """A sessionId claim scopes the identity."""
        token = sign_token("user@x.com", session_id="s1", secret=SECRET)
        assert verifier.verify(token) == "user@x.com:s1"

    def test_wrong_secret_rejected(self, verifier):
        token = sign_token("user@x.com", secret="other")
        assert verifier.verify(token) is None
        with pytest.raises(AuthenticationError, match="signature"):
            verifier.require(token)

    def test_tampered_payload_rejected(self, verifier):
        """Swapping the payload invalidates the signature."""
        header, _, sig = sign_token("user@x.com", secret=SECRET).split(".")
        forged = base64.urlsafe_b64encode(json.dumps({"email": "admin@x.com", "exp": 9999999999}).encode())
        token = ".".join([header, forged.rstrip(b"=").decode(), sig])
        assert verifier.verify(token) is None

    def test_expired_token_rejected(self):
        token = sign_token("user@x.com", secret=SECRET, ttl=60, now=1_000)
        verifier = TokenVerifier(secret=SECRET, clock=lambda: 1_061)
        with pytest.raises(AuthenticationError) as exc_info:
            verifier.require(token)
        assert exc_info.value.code == "AUTH_EXPIRED"

    def test_token_valid_until_expiry(self):
        token = sign_token("user@x.com", secret=SECRET, ttl=60, now=1_000)
        verifier = TokenVerifier(secret=SECRET, clock=lambda: 1_060)
        assert verifier.verify(token) == "user@x.com"

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens(self, verifier, token):
        assert verifier.verify(token) is None

    def test_identify_defaults_to_anonymous(self, verifier):
        assert verifier.identify(None) == ANONYMOUS
        assert verifier.identify("garbage") == ANONYMOUS

    @pytest.mark.parametrize("exp", ["soon", [1], {"at": 1}])
    def test_non_numeric_expiry_is_malformed(self, verifier, exp):
        """A correctly signed token with an unusable exp claim is rejected, not raised."""
        header = _b64url_encode(b'{"alg":"HS256","typ":"JWT"}')
        body = _b64url_encode(json.dumps({"email": "user@x.com", "exp": exp}).encode())
        token = f"{header}.{body}.{_sign(f'{header}.{body}', SECRET)}"
        with pytest.raises(AuthenticationError, match="Malformed token payload"):
            verifier.require(token)
        assert verifier.identify(token) == ANONYMOUS

    def test_signature_has_no_padding(self):
        token = sign_token("user@x.com", secret=SECRET)
        assert "=" not in token
        assert token.count(".") == 2


def test_identity_from_claims():
    assert identity_from_claims({"email": "a@b.c"}) == "a@b.c"
    assert identity_from_claims({"email": "a@b.c", "sessionId": "42"}) == "a@b.c:42"
