"""Tests for the argon2id credential hasher."""

import pytest

from gatehouse.service.errors import CorruptDigestError
from gatehouse.service.passwords import CredentialHasher


class TestHashing:
    def test_hash_is_argon2id_and_not_plaintext(self, hasher):
        digest = hasher.hash("correct horse battery staple")

        assert digest.startswith("$argon2id$")
        assert "correct horse" not in digest

    def test_same_password_produces_different_hashes(self, hasher):
        """Digests are salted."""
        assert hasher.hash("pw-one") != hasher.hash("pw-one")

    def test_verify_matches_only_the_hashed_password(self, hasher):
        digest = hasher.hash("pw123456789012345678901234567890")

        assert hasher.verify("pw123456789012345678901234567890", digest) is True
        assert hasher.verify("pw123456789012345678901234567891", digest) is False
        assert hasher.verify("", digest) is False

    def test_malformed_digest_raises_corrupt(self, hasher):
        with pytest.raises(CorruptDigestError):
            hasher.verify("anything", "not-a-phc-string")


class TestRehash:
    def test_current_parameters_need_no_rehash(self, hasher):
        assert hasher.needs_rehash(hasher.hash("pw")) is False

    def test_weaker_parameters_need_rehash(self, hasher):
        stronger = CredentialHasher(time_cost=2, memory_cost=16, parallelism=1)

        assert stronger.needs_rehash(hasher.hash("pw")) is True

    def test_garbage_digest_needs_rehash(self, hasher):
        assert hasher.needs_rehash("garbage") is True


class TestBurn:
    def test_burn_never_raises(self, hasher):
        hasher.burn("whatever")
        hasher.burn("")
