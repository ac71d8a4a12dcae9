"""Worker hosts: the environment that installs and runs worker scripts.

The coordinator never owns worker instances. It asks a host to register a
script URL and learns what happened through events the host delivers to its
subscribers:

- InstallationStarted when a new worker begins installing (solicited or not),
- InstallationReachedState each time an installation changes state.

LocalWorkerHost keeps the registration in the SQLite store and installs
synchronously, so a whole installing -> active cycle completes inside
register().
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Callable

import requests

from .database import DatabaseError, _db_lock
from .models import (
    InstallationReachedState,
    InstallationStarted,
    WorkerEvent,
    WorkerInstallation,
    WorkerRegistration,
    WorkerState,
)

logger = logging.getLogger(__name__)

EventListener = Callable[[WorkerEvent], None]


class HostError(Exception):
    """Raised when the host cannot install a worker."""

    pass


class WorkerHost(ABC):
    """Interface the update coordinator drives."""

    @abstractmethod
    def get_registration(self) -> WorkerRegistration | None:
        """Return the current registration, or None if nothing is registered."""

    @abstractmethod
    def register(self, script_url: str) -> WorkerRegistration:
        """Install script_url as the worker. A no-op if it is already active."""

    @abstractmethod
    def unregister(self) -> bool:
        """Remove the registration. Returns False if there was none."""

    @abstractmethod
    def subscribe(self, listener: EventListener) -> None:
        """Deliver every future lifecycle event to listener."""

    @abstractmethod
    def alert(self, message: str) -> None:
        """Show a warning the user cannot miss."""


class LocalWorkerHost(WorkerHost):
    """Installs worker scripts into the local store.

    Registrations are kept per scope, so deployments sharing one database
    each own their own active worker.

    Example:
        host = LocalWorkerHost(conn, requests.Session())
        host.subscribe(coordinator.dispatch)
        host.register("https://app.example.com/sw.a1b2c3.js")
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        session: requests.Session,
        timeout: int = 30,
        user_agent: str = "StickyProxy/0.1",
        scope: str = "",
    ) -> None:
        self._conn = conn
        self.scope = scope
        self._session = session
        self._timeout = timeout
        self._user_agent = user_agent
        self._listeners: list[EventListener] = []
        self._generation = 0  # bumped by unregister() to abort installs in flight
        self.alerts: list[str] = []
        self._registration = self._load()

    def _load(self) -> WorkerRegistration | None:
        try:
            with _db_lock:
                row = self._conn.execute(
                    "SELECT script_url FROM registrations WHERE scope = ? AND role = 'active'",
                    (self.scope,),
                ).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to load worker registration: {e}")

        if row is None:
            return None
        return WorkerRegistration(active=WorkerInstallation(row["script_url"], WorkerState.ACTIVE))

    def _save_active(self, script_url: str, script: bytes) -> None:
        try:
            with _db_lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO registrations (scope, role, script_url, script, state) "
                    "VALUES (?, 'active', ?, ?, ?)",
                    (self.scope, script_url, script, WorkerState.ACTIVE.value),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to save worker registration: {e}")

    def active_script(self) -> bytes | None:
        """Return the installed worker's script bytes, or None."""
        try:
            with _db_lock:
                row = self._conn.execute(
                    "SELECT script FROM registrations WHERE scope = ? AND role = 'active'",
                    (self.scope,),
                ).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to load worker script: {e}")
        return bytes(row["script"]) if row else None

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: WorkerEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def _transition(self, installation: WorkerInstallation, state: WorkerState) -> None:
        installation.state = state
        self._emit(InstallationReachedState(installation, state))

    def _download(self, script_url: str) -> bytes:
        try:
            response = self._session.get(
                script_url,
                headers={"User-Agent": self._user_agent},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise HostError(f"Failed to download worker {script_url}: {e}")

        if response.status_code != 200:
            raise HostError(f"Failed to download worker {script_url}: HTTP {response.status_code}")
        return response.content

    def get_registration(self) -> WorkerRegistration | None:
        return self._registration

    def register(self, script_url: str) -> WorkerRegistration:
        """Install script_url unless it is already the active worker.

        Raises:
            HostError: If the script cannot be downloaded.
        """
        registration = self._registration
        if registration is not None and registration.active is not None:
            if registration.active.script_url == script_url:
                logger.debug("Worker %s already active", script_url)
                return registration

        script = self._download(script_url)
        self._install(script_url, script)
        return self._registration or WorkerRegistration()

    def update(self) -> bool:
        """Re-download the active worker and reinstall it if its bytes changed.

        This is the host's own periodic update check. The installation it
        starts was not requested by anyone.

        Returns:
            True if a new installation was started.
        """
        registration = self._registration
        if registration is None or registration.active is None:
            return False

        script_url = registration.active.script_url
        script = self._download(script_url)
        if script == self.active_script():
            return False

        logger.info("Worker %s changed on the server, reinstalling", script_url)
        self._install(script_url, script)
        return True

    def _install(self, script_url: str, script: bytes) -> None:
        if self._registration is None:
            self._registration = WorkerRegistration()
        registration = self._registration
        generation = self._generation

        installation = WorkerInstallation(script_url, WorkerState.INSTALLING)
        registration.installing = installation
        self._emit(InstallationStarted(installation))

        if generation != self._generation:
            # A listener unregistered us while the install was starting
            installation.state = WorkerState.REDUNDANT
            return

        registration.installing = None
        registration.waiting = installation
        self._transition(installation, WorkerState.INSTALLED)

        registration.waiting = None
        self._transition(installation, WorkerState.ACTIVATING)

        previous = registration.active
        self._save_active(script_url, script)
        registration.active = installation
        if previous is not None:
            self._transition(previous, WorkerState.REDUNDANT)
        self._transition(installation, WorkerState.ACTIVE)

        logger.info("Worker %s is active", script_url)

    def unregister(self) -> bool:
        self._generation += 1
        registration = self._registration
        self._registration = None

        try:
            with _db_lock:
                cursor = self._conn.execute("DELETE FROM registrations WHERE scope = ?", (self.scope,))
                self._conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to unregister worker: {e}")

        if registration is None:
            return cursor.rowcount > 0

        for installation in (registration.installing, registration.waiting, registration.active):
            if installation is not None and installation.state is not WorkerState.REDUNDANT:
                installation.state = WorkerState.REDUNDANT
        return True

    def alert(self, message: str) -> None:
        self.alerts.append(message)
        logger.critical(message)
