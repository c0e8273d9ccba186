"""Tests for crypto primitives: identifiers, hashing, comparison, AES-GCM."""

from __future__ import annotations

import re
import statistics
import time
from typing import List

import pytest

from smcp_gateway.security.crypto import (
    DecryptionError,
    constant_time_compare,
    decrypt_data,
    encrypt_data,
    generate_api_key,
    generate_correlation_id,
    generate_encryption_key,
    generate_secure_id,
    generate_session_id,
    hash_string,
    import_encryption_key,
)
from smcp_gateway.security.validators import is_valid_api_key, is_valid_session_id

_HEX = re.compile(r"^[0-9a-f]+$")


# ── Identifiers ─────────────────────────────────────────────────────────


class TestGenerateSecureId:
    @pytest.mark.parametrize("n", [1, 8, 24, 32])
    def test_length_is_twice_bytes(self, n: int) -> None:
        value = generate_secure_id(n)
        assert len(value) == 2 * n
        assert _HEX.match(value)

    def test_values_differ(self) -> None:
        assert len({generate_secure_id(16) for _ in range(50)}) == 50

    def test_rejects_non_positive(self) -> None:
        with pytest.raises(ValueError):
            generate_secure_id(0)


class TestTenantScopedIds:
    @pytest.mark.parametrize("tenant", ["acme", "a_b-c", "T" * 64, "x_y_z"])
    def test_session_id_is_valid(self, tenant: str) -> None:
        sid = generate_session_id(tenant)
        assert sid.startswith(f"sess_{tenant}_")
        assert is_valid_session_id(sid)

    @pytest.mark.parametrize("tenant", ["acme", "a_b-c", "T" * 64, "x_y_z"])
    def test_api_key_is_valid(self, tenant: str) -> None:
        key = generate_api_key(tenant)
        assert key.startswith(f"smcp_{tenant}_")
        assert is_valid_api_key(key)

    def test_correlation_id_shape(self) -> None:
        cid = generate_correlation_id()
        assert re.match(r"^req_\d{13}_[0-9a-f]{32}$", cid)


# ── Hashing / comparison ────────────────────────────────────────────────


class TestHashString:
    def test_sha256_hex(self) -> None:
        assert (
            hash_string("abc")
            == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_deterministic(self) -> None:
        assert hash_string("smcp_acme_x") == hash_string("smcp_acme_x")


class TestConstantTimeCompare:
    @pytest.mark.parametrize(
        "a,b",
        [("", ""), ("abc", "abc"), ("abc", "abd"), ("abc", "abcd"), ("", "x"), ("ünï", "ünï")],
    )
    def test_agrees_with_equality(self, a: str, b: str) -> None:
        assert constant_time_compare(a, b) == (a == b)
        assert constant_time_compare(b, a) == constant_time_compare(a, b)

    def test_reflexive(self) -> None:
        secret = generate_secure_id(32)
        assert constant_time_compare(secret, secret)

    def test_different_lengths_are_unequal(self) -> None:
        assert not constant_time_compare("a" * 64, "a" * 63)

    def test_time_independent_of_mismatch_position(self) -> None:
        size = 200_000
        secret = "a" * size
        early = "b" + "a" * (size - 1)
        late = "a" * (size - 1) + "b"

        def _elapsed(candidate: str) -> float:
            start = time.perf_counter()
            constant_time_compare(secret, candidate)
            return time.perf_counter() - start

        early_runs: List[float] = []
        late_runs: List[float] = []
        # Interleaved runs
        for _ in range(301):
            early_runs.append(_elapsed(early))
            late_runs.append(_elapsed(late))

        # A short-circuiting comparison differs by orders of magnitude here
        ratio = statistics.median(late_runs) / statistics.median(early_runs)
        assert 0.5 < ratio < 2.0, ratio


# ── Symmetric encryption ────────────────────────────────────────────────


class TestEncryption:
    def test_roundtrip(self) -> None:
        key = generate_encryption_key()
        payload = encrypt_data("tenant secret ✓", key)
        assert decrypt_data(payload.encrypted, payload.iv, key) == "tenant secret ✓"

    def test_fresh_nonce_each_time(self) -> None:
        key = generate_encryption_key()
        first = encrypt_data("same", key)
        second = encrypt_data("same", key)
        assert first.iv != second.iv
        assert first.encrypted != second.encrypted
        assert len(bytes.fromhex(first.iv)) == 12

    def test_wrong_key_fails(self) -> None:
        payload = encrypt_data("data", generate_encryption_key())
        with pytest.raises(DecryptionError):
            decrypt_data(payload.encrypted, payload.iv, generate_encryption_key())

    def test_tampered_ciphertext_fails(self) -> None:
        key = generate_encryption_key()
        payload = encrypt_data("data", key)
        flipped = format(int(payload.encrypted[0], 16) ^ 1, "x") + payload.encrypted[1:]
        with pytest.raises(DecryptionError):
            decrypt_data(flipped, payload.iv, key)

    def test_bad_hex_fails(self) -> None:
        with pytest.raises(DecryptionError):
            decrypt_data("zz", "00" * 12, generate_encryption_key())

    def test_key_must_be_256_bits(self) -> None:
        assert len(generate_encryption_key()) == 32
        with pytest.raises(ValueError):
            import_encryption_key(b"short")
