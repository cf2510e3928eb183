from datetime import timedelta

import pytest

from tokenguard.service.hashing import hash_credential
from tokenguard.service.sessions import SessionRegistry
from tokenguard.storage.errors import StorageErrorKind


class TestCreateAndList:
    async def test_create_session_records_hash_only(self, sessions, memory_store, clock):
        result = await sessions.create_session("alice", "tok-a", "10.0.0.1", "curl/8")

        assert result.success is True
        stored = memory_store.sessions[result.session_id]
        assert stored.credential_hash == hash_credential("tok-a")
        assert stored.source_address == "10.0.0.1"
        assert stored.client_descriptor == "curl/8"
        assert stored.created_at == clock.now()
        assert stored.expires_at == clock.now() + timedelta(days=30)

    async def test_list_most_recent_first(self, sessions, clock):
        first = await sessions.create_session("alice", "tok-a")
        clock.advance(seconds=5)
        second = await sessions.create_session("alice", "tok-b")
        clock.advance(seconds=5)
        await sessions.touch("tok-a")

        listed = await sessions.list_sessions("alice")

        assert [s.id for s in listed] == [first.session_id, second.session_id]

    async def test_list_excludes_expired_and_other_identities(self, faulty_store, clock):
        registry = SessionRegistry(faulty_store, session_lifetime_ms=1000, clock=clock.now)
        await registry.create_session("alice", "tok-a")
        await registry.create_session("bob", "tok-b")
        clock.advance(seconds=2)
        fresh = await registry.create_session("alice", "tok-c")

        listed = await registry.list_sessions("alice")

        assert [s.id for s in listed] == [fresh.session_id]

    async def test_public_view_omits_credential_hash(self, sessions):
        await sessions.create_session("alice", "tok-a")
        (listed,) = await sessions.list_sessions("alice")

        public = listed.to_public_dict()
        assert "credential_hash" not in public
        assert public["identity"] == "alice"

    @pytest.mark.parametrize("identity,credential", [("", "tok"), ("alice", ""), (None, "tok")])
    async def test_invalid_input(self, sessions, faulty_store, identity, credential):
        result = await sessions.create_session(identity, credential)
        assert result.success is False
        assert result.error == "invalid_input"
        assert faulty_store.calls == []


class TestRevoke:
    async def test_revoke_scoped_to_owner(self, sessions, memory_store):
        mine = await sessions.create_session("alice", "tok-a")
        theirs = await sessions.create_session("bob", "tok-b")

        assert await sessions.revoke_session(theirs.session_id, "alice") is False
        assert theirs.session_id in memory_store.sessions

        assert await sessions.revoke_session(mine.session_id, "alice") is True
        assert mine.session_id not in memory_store.sessions

    async def test_revoke_unknown_session(self, sessions):
        assert await sessions.revoke_session("no-such-id", "alice") is False

    async def test_revoke_all(self, sessions):
        await sessions.create_session("alice", "tok-a")
        await sessions.create_session("alice", "tok-b")
        await sessions.create_session("bob", "tok-c")

        assert await sessions.revoke_all_sessions("alice") == 2
        assert await sessions.list_sessions("alice") == []
        assert len(await sessions.list_sessions("bob")) == 1

    async def test_revoke_others_keeps_current(self, sessions):
        await sessions.create_session("alice", "tok-a")
        current = await sessions.create_session("alice", "tok-b")
        await sessions.create_session("alice", "tok-c")

        assert await sessions.revoke_other_sessions("alice", "tok-b") == 2
        assert [s.id for s in await sessions.list_sessions("alice")] == [current.session_id]


class TestStorageFailures:
    @pytest.mark.parametrize(
        "kind,error",
        [
            (StorageErrorKind.NOT_PROVISIONED, "not_provisioned"),
            (StorageErrorKind.TRANSIENT, "storage_unavailable"),
            (StorageErrorKind.MALFORMED, "storage_error"),
        ],
    )
    async def test_create_failure_is_reported(self, sessions, faulty_store, kind, error):
        faulty_store.fail_kind("create_session", kind, "user_sessions")

        result = await sessions.create_session("alice", "tok-a")

        assert result.success is False
        assert result.session_id is None
        assert result.error == error

    async def test_unexpected_create_failure(self, sessions, faulty_store):
        faulty_store.fail("create_session", ValueError("bad row"))
        result = await sessions.create_session("alice", "tok-a")
        assert result.success is False
        assert result.error == "storage_error"

    async def test_unprovisioned_reads_and_deletes_are_empty(self, sessions, faulty_store):
        for method in ("list_sessions", "delete_session", "delete_identity_sessions"):
            faulty_store.fail_kind(method, StorageErrorKind.NOT_PROVISIONED, "user_sessions")

        assert await sessions.list_sessions("alice") == []
        assert await sessions.revoke_session("sid", "alice") is False
        assert await sessions.revoke_all_sessions("alice") == 0
        assert await sessions.revoke_other_sessions("alice", "tok") == 0

    async def test_unexpected_read_and_delete_failures_are_empty(
        self, sessions, faulty_store
    ):
        await sessions.create_session("alice", "tok-a")
        for method in ("list_sessions", "delete_session", "delete_identity_sessions"):
            faulty_store.fail(method, RuntimeError("boom"))

        assert await sessions.list_sessions("alice") == []
        assert await sessions.revoke_session("sid", "alice") is False
        assert await sessions.revoke_all_sessions("alice") == 0
        assert await sessions.revoke_other_sessions("alice", "tok-a") == 0

    async def test_touch_swallows_failures(self, sessions, faulty_store):
        faulty_store.fail("touch_session", RuntimeError("boom"))
        await sessions.touch("tok-a")
        assert faulty_store.calls == ["touch_session"]

    def test_rejects_non_positive_lifetime(self, memory_store):
        with pytest.raises(ValueError):
            SessionRegistry(memory_store, session_lifetime_ms=0)
