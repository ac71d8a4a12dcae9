"""Content digests, verification, and the immutable cache-control contract.

Two digest schemes are supported:

- ``content-hash``: the manifest carries the lowercase hex SHA-256 of the body.
- ``transport-integrity``: the manifest carries a subresource-integrity token
  (``sha256-<base64>``, ``sha384-...`` or ``sha512-...``). Several
  space-separated tokens may be given; the body must match one of the
  strongest algorithm present, as browsers do.
"""

import base64
import hashlib
import logging

logger = logging.getLogger(__name__)

# Cache-Control directives an immutable asset must carry
IMMUTABLE_MAX_AGE = "31536000"  # one year, in seconds

# Algorithms allowed in subresource-integrity tokens, weakest first
SRI_ALGORITHMS = ("sha256", "sha384", "sha512")


class IntegrityMismatch(Exception):
    """Raised when fetched content does not match its expected digest."""

    def __init__(self, url: str, expected: str, received: str) -> None:
        self.url = url
        self.expected = expected
        self.received = received
        super().__init__(f"Invalid digest for {url}. Expected {expected} but received {received}.")


class RegistrationContractViolation(Exception):
    """Raised when a worker script breaks the immutable distribution contract."""

    pass


def sha256_hex(body: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of body."""
    return hashlib.sha256(body).hexdigest()


def sri_token(body: bytes, algorithm: str = "sha256") -> str:
    """Return a subresource-integrity token for body.

    Args:
        body: Content to hash.
        algorithm: One of sha256, sha384, sha512.

    Returns:
        Token such as "sha256-47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU=".
    """
    if algorithm not in SRI_ALGORITHMS:
        raise ValueError(f"Unsupported integrity algorithm: {algorithm}")
    raw = hashlib.new(algorithm, body).digest()
    return f"{algorithm}-{base64.b64encode(raw).decode('ascii')}"


def compute_digest(body: bytes, scheme: str) -> str:
    """Compute the digest of body in the given scheme's default form."""
    if scheme == "content-hash":
        return sha256_hex(body)
    if scheme == "transport-integrity":
        return sri_token(body)
    raise ValueError(f"Unknown digest scheme: {scheme}")


def _parse_sri(expected: str) -> list[tuple[str, str]]:
    """Split an integrity attribute into (algorithm, token) pairs.

    Unknown algorithms and options after "?" are ignored.
    """
    parsed: list[tuple[str, str]] = []
    for token in expected.split():
        token = token.split("?", 1)[0]
        algorithm, sep, _ = token.partition("-")
        if sep and algorithm.lower() in SRI_ALGORITHMS:
            parsed.append((algorithm.lower(), token))
    return parsed


def verify(body: bytes, expected: str, scheme: str, url: str = "") -> str:
    """Check body against an expected digest.

    Args:
        body: Content to verify.
        expected: Digest from the manifest.
        scheme: "content-hash" or "transport-integrity".
        url: Resource URL, used in the error message.

    Returns:
        The digest that was received (matching expected).

    Raises:
        IntegrityMismatch: If the body does not match.
    """
    if scheme == "content-hash":
        received = sha256_hex(body)
        if received != expected.strip().lower():
            raise IntegrityMismatch(url, expected, received)
        return received

    if scheme == "transport-integrity":
        tokens = _parse_sri(expected)
        if not tokens:
            raise IntegrityMismatch(url, expected, sri_token(body))

        # Only the strongest algorithm listed counts
        strongest = max(SRI_ALGORITHMS.index(algorithm) for algorithm, _ in tokens)
        algorithm = SRI_ALGORITHMS[strongest]
        received = sri_token(body, algorithm)
        if received not in {token for alg, token in tokens if alg == algorithm}:
            raise IntegrityMismatch(url, expected, received)
        return received

    raise ValueError(f"Unknown digest scheme: {scheme}")


def version_token(body: bytes, length: int = 6) -> str:
    """Derive a worker version token: the first length hex chars of its SHA-256."""
    return sha256_hex(body)[:length]


def parse_cache_control(value: str | None) -> dict[str, str | None]:
    """Parse a Cache-Control header into a directive -> argument mapping.

    Directive names are lowercased. Directives without an argument map to None.
    """
    directives: dict[str, str | None] = {}
    if not value:
        return directives

    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, argument = part.partition("=")
        directives[name.strip().lower()] = argument.strip().strip('"') if sep else None
    return directives


def cache_contract_problems(cache_control: str | None) -> list[str]:
    """List the ways a Cache-Control value falls short of the immutable contract.

    Returns:
        Human-readable problems, empty if the header is compliant.
    """
    directives = parse_cache_control(cache_control)
    problems: list[str] = []

    if "public" not in directives:
        problems.append("not distributed as public")
    if "immutable" not in directives:
        problems.append("not distributed as immutable")
    if directives.get("max-age") != IMMUTABLE_MAX_AGE:
        problems.append("distributed with a time-to-live of less than 1 year")

    return problems


def check_cache_contract(url: str, cache_control: str | None, strict: bool) -> list[str]:
    """Enforce the immutable cache-control contract for a worker script.

    Args:
        url: Script URL, used in messages.
        cache_control: The response's Cache-Control header, or None.
        strict: Raise instead of warning.

    Returns:
        The problems found (already logged as warnings when not strict).

    Raises:
        RegistrationContractViolation: If strict and the contract is broken.
    """
    problems = cache_contract_problems(cache_control)
    if not problems:
        return problems

    message = f"Worker script {url} is {', '.join(problems)}"
    if strict:
        raise RegistrationContractViolation(message)

    logger.warning("%s. Use it at your own risk.", message)
    return problems
