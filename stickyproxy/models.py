"""Data models for manifests, cached responses, and worker lifecycle."""

from dataclasses import dataclass, field
from enum import Enum


@dataclass(frozen=True)
class ManifestEntry:
    """A single resource listed in the build manifest.

    Attributes:
        path: Normalized resource path, starting with "/" and without a trailing slash.
        digest: Opaque integrity token the resource content must match.
    """

    path: str
    digest: str


@dataclass(frozen=True)
class Candidate:
    """A resolved (url, expected digest) pair the fetcher should satisfy.

    Attributes:
        path: Manifest path the candidate was derived from.
        url: Absolute URL to fetch.
        digest: Expected integrity token from the manifest.
    """

    path: str
    url: str
    digest: str

    @property
    def key(self) -> str:
        """Request identity used as the cache key inside a generation."""
        return self.url


@dataclass(frozen=True)
class CachedResponse:
    """A cleaned HTTP response as stored in a cache generation.

    Attributes:
        status: HTTP status code.
        reason: HTTP reason phrase (e.g., "OK").
        headers: Response headers with transport metadata stripped.
        body: Raw response body.
    """

    status: int
    reason: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        """Whether the status is in the 2xx range."""
        return 200 <= self.status < 300


@dataclass(frozen=True)
class VersionState:
    """Persisted version markers of the sticky update protocol.

    Attributes:
        current_version: Version the client trusts and intends to run, or None on first run.
        pending_version: Version whose installation this client solicited, or None.
        bricked: Whether tampering was detected. Terminal once set.
    """

    current_version: str | None = None
    pending_version: str | None = None
    bricked: bool = False

    @property
    def is_solicited(self) -> bool:
        """Whether an installation starting now was requested by this client."""
        return self.pending_version == self.current_version


class WorkerState(str, Enum):
    """Lifecycle states of an installed worker."""

    INSTALLING = "installing"
    INSTALLED = "installed"
    ACTIVATING = "activating"
    ACTIVE = "active"
    REDUNDANT = "redundant"


@dataclass
class WorkerInstallation:
    """A worker instance owned by the host.

    The coordinator only ever holds references to these; the host moves
    them through their states.
    """

    script_url: str
    state: WorkerState = WorkerState.INSTALLING


@dataclass
class WorkerRegistration:
    """The host's registration slot: at most one worker per role."""

    installing: WorkerInstallation | None = None
    waiting: WorkerInstallation | None = None
    active: WorkerInstallation | None = None


@dataclass(frozen=True)
class InstallationStarted:
    """The host began installing a new worker (an "updatefound")."""

    installation: WorkerInstallation


@dataclass(frozen=True)
class InstallationReachedState:
    """A worker installation moved to a new lifecycle state."""

    installation: WorkerInstallation
    state: WorkerState


@dataclass(frozen=True)
class FetchCompleted:
    """A worker script fetch finished.

    Attributes:
        url: URL that was fetched.
        version: Version token computed from the fetched content.
        cache_control: Cache-Control header value, or None if absent.
    """

    url: str
    version: str
    cache_control: str | None = None


# Union of everything the coordinator's dispatch() accepts
WorkerEvent = InstallationStarted | InstallationReachedState | FetchCompleted
