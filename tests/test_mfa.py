"""Tests for TOTP verification, replay protection, lockout and enrollment."""

import pytest

from gatehouse.service.errors import InvalidMfaError, ValidationError
from gatehouse.service.mfa import (
    MemoryMFALedger,
    TOTP_INTERVAL,
    generate_secret,
    match_counter,
    totp_at,
)
from gatehouse.storage.common import SecretCipher


def _code(secret, clock, offset=0):
    return totp_at(secret, int(clock.now // TOTP_INTERVAL) + offset)


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("alice", "alice@x.com", "digest")


@pytest.fixture
def enrolled(memory_store, account):
    secret = generate_secret()
    memory_store.set_mfa_secret(account.id, secret, enabled=True)
    memory_store.set_mfa_enabled(account.id, True)
    return memory_store.get_account(account.id), secret


class TestTotp:
    def test_rfc6238_sha1_vector(self):
        # RFC 6238 appendix B, T = 59s, 8 digits truncated to the last 6
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        assert totp_at(secret, 59 // 30, digits=8) == "94287082"
        assert totp_at(secret, 59 // 30) == "287082"

    def test_window_accepts_adjacent_steps(self):
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
        now = 1_700_000_000.0
        step = int(now // TOTP_INTERVAL)

        assert match_counter(secret, totp_at(secret, step - 1), now, window=1) == step - 1
        assert match_counter(secret, totp_at(secret, step + 1), now, window=1) == step + 1
        assert match_counter(secret, totp_at(secret, step + 2), now, window=1) is None
        assert match_counter(secret, totp_at(secret, step - 1), now, window=0) is None

    def test_invalid_secret_yields_no_code(self):
        assert totp_at("!!!not-base32!!!", 1) == ""

    def test_unicode_digits_never_match(self):
        secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"

        assert match_counter(secret, "\u0661" * 6, 1_700_000_000.0) is None
        assert match_counter(secret, "\u00b2" * 6, 1_700_000_000.0) is None


class TestRequired:
    async def test_not_required_without_enrollment(self, mfa_gate, account):
        assert await mfa_gate.required(account) is False

    async def test_required_when_enrolled(self, mfa_gate, enrolled):
        account, _ = enrolled
        assert await mfa_gate.required(account) is True

    async def test_global_flag_disables_enforcement(self, mfa_gate, enrolled):
        account, _ = enrolled
        mfa_gate.enforce = False
        assert await mfa_gate.required(account) is False

    async def test_unreadable_secret_still_requires_code(self, mfa_gate, memory_store, enrolled, clock):
        account, secret = enrolled
        memory_store._cipher = SecretCipher("a-different-key")

        assert await mfa_gate.required(account) is True
        with pytest.raises(InvalidMfaError):
            await mfa_gate.verify(account.id, _code(secret, clock))


class TestVerify:
    async def test_valid_code_accepted_once(self, mfa_gate, enrolled, clock):
        account, secret = enrolled
        code = _code(secret, clock)

        assert await mfa_gate.verify(account.id, code) == int(clock.now // TOTP_INTERVAL)
        with pytest.raises(InvalidMfaError):
            await mfa_gate.verify(account.id, code)

    async def test_wrong_code_rejected(self, mfa_gate, enrolled, clock):
        account, secret = enrolled
        accepted = {_code(secret, clock, offset) for offset in (-1, 0, 1)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in accepted)

        with pytest.raises(InvalidMfaError):
            await mfa_gate.verify(account.id, wrong)

    @pytest.mark.parametrize("code", ["", "12345", "1234567", "abcdef", "١٢٣٤٥٦", "²²²²²²"])
    async def test_malformed_code_rejected(self, mfa_gate, enrolled, code):
        account, _ = enrolled
        with pytest.raises(InvalidMfaError):
            await mfa_gate.verify(account.id, code)

    async def test_lockout_after_max_attempts(self, mfa_gate, enrolled, clock):
        account, secret = enrolled
        for _ in range(mfa_gate.max_attempts):
            with pytest.raises(InvalidMfaError):
                await mfa_gate.verify(account.id, "abcdef")

        with pytest.raises(InvalidMfaError):
            await mfa_gate.verify(account.id, _code(secret, clock))

        clock.advance(mfa_gate.lockout_seconds + 1)
        assert await mfa_gate.verify(account.id, _code(secret, clock)) is not None

    async def test_unicode_digits_count_toward_lockout(self, mfa_gate, enrolled, clock):
        account, secret = enrolled
        for _ in range(mfa_gate.max_attempts):
            with pytest.raises(InvalidMfaError):
                await mfa_gate.verify(account.id, "\u0661" * 6)

        with pytest.raises(InvalidMfaError):
            await mfa_gate.verify(account.id, _code(secret, clock))

    async def test_disabled_secret_is_not_usable(self, mfa_gate, memory_store, account, clock):
        secret = generate_secret()
        memory_store.set_mfa_secret(account.id, secret, enabled=False)

        with pytest.raises(InvalidMfaError):
            await mfa_gate.verify(account.id, _code(secret, clock))


class TestEnrollment:
    async def test_begin_and_confirm(self, mfa_gate, memory_store, account, clock):
        result = await mfa_gate.begin_enrollment(account.id, account.email)

        assert result["otpauth_uri"].startswith("otpauth://totp/Gatehouse:")
        assert f"secret={result['secret']}" in result["otpauth_uri"]
        assert memory_store.get_mfa_secret(account.id).enabled is False

        await mfa_gate.confirm_enrollment(account.id, _code(result["secret"], clock))

        assert memory_store.get_mfa_secret(account.id).enabled is True
        assert memory_store.get_account(account.id).mfa_enabled is True

    async def test_confirm_without_begin(self, mfa_gate, account):
        with pytest.raises(ValidationError):
            await mfa_gate.confirm_enrollment(account.id, "123456")

    async def test_begin_twice_when_enabled(self, mfa_gate, enrolled):
        account, _ = enrolled
        with pytest.raises(ValidationError):
            await mfa_gate.begin_enrollment(account.id, account.email)

    async def test_disable_requires_valid_code(self, mfa_gate, memory_store, enrolled, clock):
        account, secret = enrolled

        with pytest.raises(InvalidMfaError):
            await mfa_gate.disable(account.id, "not-a-code")
        await mfa_gate.disable(account.id, _code(secret, clock))

        assert memory_store.get_mfa_secret(account.id) is None
        assert memory_store.get_account(account.id).mfa_enabled is False


class TestMemoryLedger:
    async def test_consume_is_single_use_until_ttl(self, clock):
        ledger = MemoryMFALedger(clock=clock)

        assert await ledger.consume_totp_step("a", 7, 60) is True
        assert await ledger.consume_totp_step("a", 7, 60) is False
        assert await ledger.consume_totp_step("b", 7, 60) is True
        clock.advance(61)
        assert await ledger.consume_totp_step("a", 7, 60) is True

    async def test_attempts_lock_and_clear(self, clock):
        ledger = MemoryMFALedger(clock=clock)

        assert await ledger.atomic_mfa_attempt("a", 3, 100) == (False, 1)
        await ledger.clear_mfa_attempts("a")
        assert await ledger.atomic_mfa_attempt("a", 3, 100) == (False, 1)
        assert await ledger.atomic_mfa_attempt("a", 3, 100) == (False, 2)
        assert await ledger.atomic_mfa_attempt("a", 3, 100) == (True, 3)
        assert await ledger.check_mfa_lockout("a") is True
        assert await ledger.atomic_mfa_attempt("a", 3, 100) == (True, -1)
        clock.advance(101)
        assert await ledger.check_mfa_lockout("a") is False
