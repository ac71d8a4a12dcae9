"""Sticky, integrity-checked self-update of the worker.

The coordinator pins the worker to the version the client last trusted and
re-installs that exact version on every start, whatever the server currently
serves at the canonical URL. Updates are only installed when explicitly
applied. Any installation the coordinator did not solicit is treated as an
attack: synchronous state is erased, the worker is unregistered and the client
is bricked for good.

Solicitation is recorded in the persisted state: pending_version is written
together with current_version right before the coordinator asks the host to
install, and cleared once that installation reaches "installed". An
installation that starts while pending_version != current_version was not
requested by this client.

State machine:

    UNINITIALIZED -> PINNED -> CHECKING_FOR_UPDATE -> PINNED
                                                   -> UPDATE_AVAILABLE -> UPDATING -> PINNED
    any state -> BRICKED (absorbing)
"""

import logging
import posixpath
import threading
from dataclasses import dataclass
from enum import Enum
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests

from .config import ProxyConfig
from .database import StateStore
from .fetcher import UpstreamUnavailable
from .host import HostError, WorkerHost
from .integrity import RegistrationContractViolation, check_cache_contract, version_token
from .models import (
    FetchCompleted,
    InstallationReachedState,
    InstallationStarted,
    WorkerEvent,
    WorkerInstallation,
    WorkerState,
)

logger = logging.getLogger(__name__)

TAMPER_ALERT = (
    "An unsolicited update attack was detected. Your storage has been safely erased. "
    "Please report this incident urgently. Please do not use this website ({origin}) anymore."
)

BRICKED_ALERT = "This website ({origin}) is bricked after an unsolicited update. Please do not use it anymore."


class CoordinatorError(Exception):
    """Raised when an update cannot be carried out."""

    pass


class BrickedError(CoordinatorError):
    """Raised on any update activity after tampering was detected."""

    pass


class CoordinatorState(str, Enum):
    """States of the update coordinator."""

    UNINITIALIZED = "uninitialized"
    PINNED = "pinned"
    CHECKING_FOR_UPDATE = "checking-for-update"
    UPDATE_AVAILABLE = "update-available"
    UPDATING = "updating"
    BRICKED = "bricked"


@dataclass(frozen=True)
class AvailableUpdate:
    """A newer worker the server offers, not installed yet.

    Attributes:
        version: Version token of the new worker.
        script_url: Version-qualified URL to install it from.
    """

    version: str
    script_url: str


def versioned_url(script_url: str, version: str, style: str = "basename") -> str:
    """Build the version-qualified URL of a worker script.

    Args:
        script_url: Canonical script URL, e.g. "https://a.example/sw.js".
        version: Version token.
        style: "basename" (sw.<v>.js), "hashed" (sw.<v>.h.js) or "query" (sw.js?version=<v>).

    Returns:
        The version-qualified URL.
    """
    parts = urlsplit(script_url)

    if style == "query":
        query = [(key, value) for key, value in parse_qsl(parts.query) if key != "version"]
        query.append(("version", version))
        return urlunsplit(parts._replace(query=urlencode(query)))

    directory, filename = posixpath.split(parts.path)
    basename, _, rest = filename.partition(".")
    extension = rest.rpartition(".")[2] if rest else ""

    qualifier = f"{version}.h" if style == "hashed" else version
    versioned = f"{basename}.{qualifier}.{extension}" if extension else f"{basename}.{qualifier}"

    return urlunsplit(parts._replace(path=posixpath.join(directory, versioned)))


class UpdateCoordinator:
    """Drives worker registration and the sticky update protocol.

    Example:
        coordinator = UpdateCoordinator(config, store, host, session)
        update = coordinator.register()
        if update is not None:
            coordinator.apply_update(update)
    """

    def __init__(
        self,
        config: ProxyConfig,
        store: StateStore,
        host: WorkerHost,
        session: requests.Session,
    ) -> None:
        self._config = config
        self._store = store
        self._host = host
        self._session = session
        self._lock = threading.RLock()
        self._state = CoordinatorState.UNINITIALIZED
        self._available: AvailableUpdate | None = None
        self._solicited_installation: WorkerInstallation | None = None
        self._replaced: tuple[WorkerInstallation, threading.Event] | None = None

        if store.bricked:
            self._state = CoordinatorState.BRICKED

        host.subscribe(self.dispatch)

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def available_update(self) -> AvailableUpdate | None:
        return self._available

    @property
    def canonical_url(self) -> str:
        return self._config.worker_url

    def script_url_for(self, version: str) -> str:
        return versioned_url(self.canonical_url, version, self._config.worker.version_style)

    def _refuse_if_bricked(self) -> None:
        if self._state is CoordinatorState.BRICKED or self._store.bricked:
            self._state = CoordinatorState.BRICKED
            self._host.alert(BRICKED_ALERT.format(origin=self._config.origin))
            raise BrickedError("This website is bricked")

    # Network

    def _fetch_script(self, url: str) -> requests.Response:
        try:
            response = self._session.get(
                url,
                headers={
                    "Cache-Control": "no-cache",
                    "Pragma": "no-cache",
                    "User-Agent": self._config.network.user_agent,
                },
                timeout=self._config.network.timeout,
            )
        except requests.RequestException as e:
            raise UpstreamUnavailable(url, str(e))

        if response.status_code != 200:
            raise UpstreamUnavailable(url, f"HTTP {response.status_code}")
        return response

    def _fetch_version(self) -> FetchCompleted:
        """Fetch the canonical script and derive its version token."""
        response = self._fetch_script(self.canonical_url)
        cache_control = response.headers.get("Cache-Control")
        check_cache_contract(self.canonical_url, cache_control, self._config.integrity.strict_header_check)

        version = version_token(response.content, self._config.worker.version_length)
        return FetchCompleted(url=self.canonical_url, version=version, cache_control=cache_control)

    def _check_versioned_script(self, version: str) -> None:
        """Make sure the version-qualified copy exists and carries the same content."""
        script_url = self.script_url_for(version)
        try:
            response = self._fetch_script(script_url)
            received = version_token(response.content, self._config.worker.version_length)
            problem = None if received == version else f"has version {received}, expected {version}"
        except UpstreamUnavailable as e:
            problem = f"is unavailable ({e})"

        if problem is None:
            return

        message = f"Version-qualified worker {script_url} {problem}"
        if self._config.integrity.strict_header_check:
            raise RegistrationContractViolation(message)
        logger.warning("%s. Use it at your own risk.", message)

    # Protocol

    def _install(self, script_url: str) -> None:
        try:
            self._host.register(script_url)
        except HostError:
            if self._state is not CoordinatorState.BRICKED:
                self._store.pending_version = None
            raise

    def register(self) -> AvailableUpdate | None:
        """Install the pinned worker and optionally look for an update.

        Returns:
            The available update, or None if there is none, update checks are
            disabled, this was the first run, or the check failed.

        Raises:
            BrickedError: If tampering was detected earlier. No network access happens.
            RegistrationContractViolation: In strict mode, if the script breaks
                the immutable distribution contract.
            UpstreamUnavailable: If the first-run script fetch fails.
            HostError: If the host cannot install the worker.
        """
        with self._lock:
            self._refuse_if_bricked()

            if self._config.development:
                logger.info("Development mode: registering %s unpinned", self.canonical_url)
                self._host.register(self.canonical_url)
                self._refuse_if_bricked()
                self._state = CoordinatorState.PINNED
                return None

            current = self._store.current_version

            if current is None:
                fetched = self._fetch_version()
                self._check_versioned_script(fetched.version)

                self._store.current_version = fetched.version
                self._store.pending_version = fetched.version
                logger.info("First run: pinned worker version %s", fetched.version)

                self._state = CoordinatorState.PINNED
                self._install(self.script_url_for(fetched.version))
                self._refuse_if_bricked()
                return None

            script_url = self.script_url_for(current)
            registration = self._host.get_registration()
            active = registration.active if registration is not None else None
            if active is None or active.script_url != script_url:
                # Re-installing the pin is requested by this client
                self._store.pending_version = current

            self._state = CoordinatorState.PINNED
            self._install(script_url)
            self._refuse_if_bricked()
            logger.info("Registered pinned worker version %s", current)

        if not self._config.worker.check_updates:
            return None

        try:
            return self.check_for_update()
        except (RegistrationContractViolation, BrickedError):
            raise
        except (UpstreamUnavailable, HostError) as e:
            logger.warning("Update check failed: %s", e)
            with self._lock:
                if self._state is CoordinatorState.CHECKING_FOR_UPDATE:
                    self._state = CoordinatorState.PINNED
            return None

    def check_for_update(self) -> AvailableUpdate | None:
        """Compare the server's canonical worker with the pinned version.

        Returns:
            The update if the server offers a different version, else None.
        """
        with self._lock:
            self._refuse_if_bricked()
            self._state = CoordinatorState.CHECKING_FOR_UPDATE

        try:
            fetched = self._fetch_version()
            if fetched.version != self._store.current_version:
                self._check_versioned_script(fetched.version)
        except Exception:
            with self._lock:
                if self._state is CoordinatorState.CHECKING_FOR_UPDATE:
                    self._state = CoordinatorState.PINNED
            raise

        self.dispatch(fetched)
        return self._available

    def apply_update(self, update: AvailableUpdate, timeout: float | None = None) -> bool:
        """Install an available update and wait until it replaced the old worker.

        The pinned version is re-read first: if another updater already moved
        it to this version, nothing is done.

        Args:
            update: The update returned by register() or check_for_update().
            timeout: Seconds to wait for the swap, None to wait indefinitely.

        Returns:
            True if the update was installed, False if there was nothing to do.

        Raises:
            BrickedError: If tampering is or was detected.
            CoordinatorError: If the swap did not complete within timeout.
        """
        with self._lock:
            self._refuse_if_bricked()

            registration = self._host.get_registration()
            if registration is None or registration.active is None:
                logger.warning("No active worker to update")
                return False

            if self._store.current_version == update.version:
                logger.info("Worker version %s already pinned, skipping update", update.version)
                self._available = None
                self._state = CoordinatorState.PINNED
                return False

            previous_version = self._store.current_version
            self._store.current_version = update.version
            self._store.pending_version = update.version

            previous = registration.active
            replaced = threading.Event()
            self._replaced = (previous, replaced)
            self._state = CoordinatorState.UPDATING

        logger.info("Updating worker to version %s", update.version)
        try:
            self._host.register(update.script_url)
        except HostError:
            with self._lock:
                self._replaced = None
                if self._state is not CoordinatorState.BRICKED:
                    # Nothing was installed, keep the old pin
                    self._store.current_version = previous_version
                    self._store.pending_version = None
                    self._state = CoordinatorState.UPDATE_AVAILABLE
            raise

        try:
            if not replaced.wait(timeout):
                with self._lock:
                    if self._state is not CoordinatorState.BRICKED:
                        self._state = CoordinatorState.PINNED
                raise CoordinatorError(f"Timed out waiting for worker version {update.version} to activate")
        finally:
            with self._lock:
                self._replaced = None

        with self._lock:
            self._refuse_if_bricked()
            self._available = None
            self._state = CoordinatorState.PINNED
        logger.info("Worker updated to version %s", update.version)
        return True

    # Events

    def dispatch(self, event: WorkerEvent) -> None:
        """Single entry point for lifecycle events from the host and for fetch results."""
        with self._lock:
            if self._state is CoordinatorState.BRICKED:
                logger.warning("Ignoring %s: bricked", type(event).__name__)
                return

            if isinstance(event, InstallationStarted):
                self._on_installation_started(event)
            elif isinstance(event, InstallationReachedState):
                self._on_installation_state(event)
            elif isinstance(event, FetchCompleted):
                self._on_fetch_completed(event)

    def _on_fetch_completed(self, event: FetchCompleted) -> None:
        if self._state is not CoordinatorState.CHECKING_FOR_UPDATE:
            return

        if event.version == self._store.current_version:
            logger.debug("Worker version %s is up to date", event.version)
            self._available = None
            self._state = CoordinatorState.PINNED
            return

        self._available = AvailableUpdate(version=event.version, script_url=self.script_url_for(event.version))
        self._state = CoordinatorState.UPDATE_AVAILABLE
        logger.info("Worker update available: %s -> %s", self._store.current_version, event.version)

    def _on_installation_started(self, event: InstallationStarted) -> None:
        if self._config.development:
            # Nothing is pinned, so nothing can be unsolicited
            logger.debug("Development mode: installation of %s", event.installation.script_url)
            return

        if self._store.version_state().is_solicited:
            self._solicited_installation = event.installation
            return

        self._enter_brick_mode()

    def _on_installation_state(self, event: InstallationReachedState) -> None:
        if event.installation is self._solicited_installation and event.state is WorkerState.INSTALLED:
            self._store.pending_version = None
            self._solicited_installation = None

        if self._replaced is not None:
            previous, replaced = self._replaced
            if event.installation is previous and event.state is WorkerState.REDUNDANT:
                replaced.set()

    def _enter_brick_mode(self) -> None:
        logger.warning("Unsolicited worker update detected")

        # Only synchronous state: it must be gone before the new worker can run
        self._store.clear()
        logger.warning("Successfully cleared storage")

        self._host.unregister()
        logger.warning("Successfully unregistered worker")

        self._store.mark_bricked()
        self._state = CoordinatorState.BRICKED
        logger.warning("Successfully entered brick mode")

        if self._replaced is not None:
            self._replaced[1].set()

        self._host.alert(TAMPER_ALERT.format(origin=self._config.origin))
