"""Tests for digest computation, verification and the cache-control contract."""

import base64
import hashlib
import logging

import pytest

from stickyproxy.integrity import (
    IntegrityMismatch,
    RegistrationContractViolation,
    cache_contract_problems,
    check_cache_contract,
    compute_digest,
    parse_cache_control,
    sri_token,
    verify,
    version_token,
)

BODY = b"<h1>hello</h1>"


def _sri(body: bytes, algorithm: str) -> str:
    return f"{algorithm}-" + base64.b64encode(hashlib.new(algorithm, body).digest()).decode()


class TestComputeDigest:
    """Tests for compute_digest."""

    def test_content_hash_is_hex_sha256(self) -> None:
        """content-hash digests are lowercase hex SHA-256."""
        assert compute_digest(BODY, "content-hash") == hashlib.sha256(BODY).hexdigest()

    def test_transport_integrity_is_sha256_token(self) -> None:
        """transport-integrity digests default to sha256 SRI tokens."""
        assert compute_digest(BODY, "transport-integrity") == _sri(BODY, "sha256")

    def test_empty_body_sri(self) -> None:
        """Well-known SRI value for the empty body."""
        assert sri_token(b"") == "sha256-47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU="

    def test_unknown_scheme(self) -> None:
        """Unknown schemes are a programming error."""
        with pytest.raises(ValueError):
            compute_digest(BODY, "crc32")


class TestVerify:
    """Tests for verify."""

    def test_content_hash_match(self) -> None:
        """A matching hex digest returns the received digest."""
        digest = hashlib.sha256(BODY).hexdigest()
        assert verify(BODY, digest, "content-hash") == digest

    def test_content_hash_is_case_insensitive(self) -> None:
        """Uppercase manifest digests still match."""
        digest = hashlib.sha256(BODY).hexdigest()
        assert verify(BODY, digest.upper(), "content-hash") == digest

    def test_content_hash_mismatch(self) -> None:
        """A wrong digest raises IntegrityMismatch with both values."""
        with pytest.raises(IntegrityMismatch) as exc_info:
            verify(BODY, "0" * 64, "content-hash", url="https://a.example/x")

        error = exc_info.value
        assert error.url == "https://a.example/x"
        assert error.expected == "0" * 64
        assert error.received == hashlib.sha256(BODY).hexdigest()
        assert "Invalid digest for https://a.example/x" in str(error)

    def test_sri_match(self) -> None:
        """A matching SRI token verifies."""
        token = _sri(BODY, "sha384")
        assert verify(BODY, token, "transport-integrity") == token

    def test_sri_strongest_algorithm_wins(self) -> None:
        """A wrong sha512 token fails even if the sha256 token matches."""
        expected = f"{_sri(BODY, 'sha256')} sha512-AAAA"
        with pytest.raises(IntegrityMismatch):
            verify(BODY, expected, "transport-integrity")

    def test_sri_any_token_of_strongest_algorithm(self) -> None:
        """Any listed token of the strongest algorithm is accepted."""
        expected = f"sha512-AAAA {_sri(BODY, 'sha512')} {_sri(b'other', 'sha256')}"
        assert verify(BODY, expected, "transport-integrity") == _sri(BODY, "sha512")

    def test_sri_ignores_options(self) -> None:
        """Options after '?' are ignored."""
        token = _sri(BODY, "sha256")
        assert verify(BODY, token + "?foo", "transport-integrity") == token

    def test_sri_without_known_algorithm(self) -> None:
        """An integrity value with no usable token never matches."""
        with pytest.raises(IntegrityMismatch):
            verify(BODY, "md5-abc", "transport-integrity")


class TestVersionToken:
    """Tests for version_token."""

    def test_default_length(self) -> None:
        """Version tokens are the first six hex characters of the SHA-256."""
        assert version_token(BODY) == hashlib.sha256(BODY).hexdigest()[:6]

    def test_custom_length(self) -> None:
        """Length is configurable."""
        assert len(version_token(BODY, 10)) == 10


class TestCacheControl:
    """Tests for Cache-Control parsing and contract checks."""

    def test_parse(self) -> None:
        """Directives are lowercased; arguments are unquoted."""
        directives = parse_cache_control('Public, MAX-AGE="31536000", immutable')
        assert directives == {"public": None, "max-age": "31536000", "immutable": None}

    def test_parse_empty(self) -> None:
        """Missing header parses to nothing."""
        assert parse_cache_control(None) == {}

    def test_compliant_header(self) -> None:
        """The immutable contract has no problems."""
        assert cache_contract_problems("public, max-age=31536000, immutable") == []

    def test_missing_header_lists_every_problem(self) -> None:
        """A missing header fails all three requirements."""
        problems = cache_contract_problems(None)
        assert problems == [
            "not distributed as public",
            "not distributed as immutable",
            "distributed with a time-to-live of less than 1 year",
        ]

    def test_short_max_age(self) -> None:
        """A shorter max-age is reported."""
        problems = cache_contract_problems("public, max-age=60, immutable")
        assert problems == ["distributed with a time-to-live of less than 1 year"]

    def test_strict_raises(self) -> None:
        """Strict mode raises RegistrationContractViolation."""
        with pytest.raises(RegistrationContractViolation, match="not distributed as immutable"):
            check_cache_contract("https://a.example/sw.js", "public, max-age=31536000", strict=True)

    def test_permissive_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        """Permissive mode logs a warning and returns the problems."""
        with caplog.at_level(logging.WARNING, logger="stickyproxy.integrity"):
            problems = check_cache_contract("https://a.example/sw.js", "no-cache", strict=False)

        assert len(problems) == 3
        assert "Use it at your own risk" in caplog.text

    def test_compliant_is_silent(self, caplog: pytest.LogCaptureFixture) -> None:
        """A compliant header logs nothing."""
        with caplog.at_level(logging.WARNING, logger="stickyproxy.integrity"):
            assert check_cache_contract("u", "public, max-age=31536000, immutable", strict=True) == []
        assert caplog.text == ""
