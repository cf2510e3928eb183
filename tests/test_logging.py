import structlog

from tokenguard.logging import (
    _add_correlation_id,
    _redact_secrets,
    auth_context,
    correlation_id_var,
    credential_fingerprint,
    get_correlation_id,
)
from tokenguard.service.gate import AuthenticationGate
from tokenguard.service.hashing import hash_credential


class TestRedaction:
    def test_raw_credential_logged_as_fingerprint(self):
        event = _redact_secrets(None, "info", {"event": "x", "credential": "tok-abcdef"})
        expected = credential_fingerprint(hash_credential("tok-abcdef"))
        assert event["credential"] == "sha256:" + expected
        assert "tok-abcdef" not in event["credential"]

    def test_authorization_header_logged_as_fingerprint(self):
        event = _redact_secrets(None, "info", {"authorization": "Bearer abc.def"})
        assert event["authorization"].startswith("sha256:")

    def test_secrets_fully_removed(self):
        event = _redact_secrets(
            None, "info", {"password": "hunter22", "client_secret": "abc"}
        )
        assert event["password"] == "[redacted]"
        assert event["client_secret"] == "[redacted]"

    def test_email_partially_masked(self):
        event = _redact_secrets(None, "info", {"email": "alice@example.com", "email_2": "a@b"})
        assert event["email"] == "al***om"
        assert event["email_2"] == "***"

    def test_digests_and_identities_kept(self):
        digest = hash_credential("tok-a")
        fields = {
            "credential_fingerprint": credential_fingerprint(digest),
            "credential_hash": digest,
            "identity": "alice",
            "failed_attempts": 3,
        }
        assert _redact_secrets(None, "info", dict(fields)) == fields


def test_credential_fingerprint():
    digest = hash_credential("tok-a")
    assert credential_fingerprint(digest) == digest[:12]
    assert credential_fingerprint(None) is None
    assert credential_fingerprint("") is None


class TestAuthContext:
    def test_binds_operation_and_generates_correlation_id(self):
        with auth_context("logout", revoke_all=True, source=None) as cid:
            assert cid is not None
            assert get_correlation_id() == cid
            bound = structlog.contextvars.get_contextvars()
            assert bound["auth_op"] == "logout"
            assert bound["revoke_all"] is True
            assert "source" not in bound
            assert _add_correlation_id(None, "info", {})["correlation_id"] == cid

        assert get_correlation_id() is None
        assert "auth_op" not in structlog.contextvars.get_contextvars()

    def test_keeps_caller_correlation_id(self):
        token = correlation_id_var.set("cid-1")
        try:
            with auth_context("login") as cid:
                assert cid == "cid-1"
            assert get_correlation_id() == "cid-1"
        finally:
            correlation_id_var.reset(token)

    async def test_gate_operations_restore_context(self, revocation, lockout, sessions, clock):
        gate = AuthenticationGate(revocation, lockout, sessions, clock=clock.now)
        await gate.record_login_failure("alice", "10.0.0.1")
        await gate.logout("tok-a", "alice", revoke_all=True)

        assert get_correlation_id() is None
        assert structlog.contextvars.get_contextvars() == {}
