import hashlib

import pytest

from tokenguard.service.hashing import hash_credential, is_well_formed


def test_hash_is_sha256_hex():
    digest = hash_credential("tok123")
    assert digest == hashlib.sha256(b"tok123").hexdigest()
    assert len(digest) == 64


def test_hash_is_deterministic_and_distinct():
    assert hash_credential("a.b.c") == hash_credential("a.b.c")
    assert hash_credential("a.b.c") != hash_credential("a.b.d")


def test_hash_never_contains_plaintext():
    credential = "eyJhbGciOiJIUzI1NiJ9.payload.signature"
    assert credential not in hash_credential(credential)


def test_hash_rejects_non_string():
    with pytest.raises(TypeError):
        hash_credential(None)


@pytest.mark.parametrize(
    "value,expected",
    [("tok", True), ("", False), ("   ", False), (None, False), (42, False)],
)
def test_is_well_formed(value, expected):
    assert is_well_formed(value) is expected
