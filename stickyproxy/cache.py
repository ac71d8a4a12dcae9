"""Named cache generations and atomic generation cutover.

A generation is an isolated snapshot of verified responses. Precaching builds
a complete new generation before exposing it, so a page is never served partly
from an old generation and partly from a new one. At most two generations
exist during a transition: the active one and the one being built.
"""

import json
import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor, as_completed

from .database import DatabaseError, _db_lock, get_metadata, set_metadata
from .fetcher import VerifiedFetcher
from .manifest import Manifest
from .models import CachedResponse, Candidate
from .resolver import candidate_for, resolve

logger = logging.getLogger(__name__)

# Generations owned by this system carry this prefix. No other name is ever deleted.
GENERATION_PREFIX = "#"

# Limit concurrent precache fetches; each holds a whole response body in memory.
MAX_WORKERS = 4

# _metadata key holding the active generation name
ACTIVE_GENERATION_KEY = "active_generation"


class CacheGeneration:
    """One named store of request-key -> verified response."""

    def __init__(self, conn: sqlite3.Connection, name: str) -> None:
        self._conn = conn
        self.name = name

    def __repr__(self) -> str:
        return f"CacheGeneration({self.name!r})"

    def match(self, key: str) -> CachedResponse | None:
        """Return the stored response for key, or None."""
        try:
            with _db_lock:
                row = self._conn.execute(
                    "SELECT status, reason, headers, body FROM cache_entries WHERE generation = ? AND request_key = ?",
                    (self.name, key),
                ).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to read cache entry: {e}")

        if row is None:
            return None
        return CachedResponse(
            status=row["status"],
            reason=row["reason"],
            headers=json.loads(row["headers"]),
            body=bytes(row["body"]),
        )

    def put(self, key: str, response: CachedResponse) -> None:
        """Store response under key. Rewriting identical content is harmless."""
        try:
            with _db_lock:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO cache_entries
                    (generation, request_key, status, reason, headers, body)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        self.name,
                        key,
                        response.status,
                        response.reason,
                        json.dumps(response.headers),
                        response.body,
                    ),
                )
                self._conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to write cache entry: {e}")

    def keys(self) -> list[str]:
        """Return the stored request keys, sorted."""
        try:
            with _db_lock:
                rows = self._conn.execute(
                    "SELECT request_key FROM cache_entries WHERE generation = ? ORDER BY request_key",
                    (self.name,),
                ).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to list cache entries: {e}")
        return [row["request_key"] for row in rows]

    def count(self) -> int:
        """Return the number of stored entries."""
        try:
            with _db_lock:
                row = self._conn.execute(
                    "SELECT COUNT(*) AS n FROM cache_entries WHERE generation = ?",
                    (self.name,),
                ).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to count cache entries: {e}")
        return row["n"]


class CacheStorage:
    """All cache generations in one database, by name."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def open(self, name: str) -> CacheGeneration:
        """Return the generation called name, creating it if needed."""
        try:
            with _db_lock:
                self._conn.execute("INSERT OR IGNORE INTO generations (name) VALUES (?)", (name,))
                self._conn.commit()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to open generation '{name}': {e}")
        return CacheGeneration(self._conn, name)

    def has(self, name: str) -> bool:
        try:
            with _db_lock:
                row = self._conn.execute("SELECT 1 FROM generations WHERE name = ?", (name,)).fetchone()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to look up generation '{name}': {e}")
        return row is not None

    def keys(self) -> list[str]:
        """Return every generation name, oldest first."""
        try:
            with _db_lock:
                rows = self._conn.execute("SELECT name FROM generations ORDER BY created_at, name").fetchall()
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to list generations: {e}")
        return [row["name"] for row in rows]

    def delete(self, name: str) -> bool:
        """Delete a generation and its entries. Returns False if it did not exist."""
        try:
            with _db_lock:
                self._conn.execute("DELETE FROM cache_entries WHERE generation = ?", (name,))
                cursor = self._conn.execute("DELETE FROM generations WHERE name = ?", (name,))
                self._conn.commit()
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise DatabaseError(f"Failed to delete generation '{name}': {e}")


class CacheGenerationManager:
    """Owns the active generation, builds new ones and removes superseded ones.

    Example:
        manager = CacheGenerationManager(storage, fetcher, manifest, origin)
        manager.precache()
        manager.uncache()
        response = manager.handle("/about/")
    """

    def __init__(
        self,
        storage: CacheStorage,
        fetcher: VerifiedFetcher,
        manifest: Manifest,
        origin: str,
        fallback_rules: tuple[str, ...] | None = None,
        max_workers: int = MAX_WORKERS,
    ) -> None:
        self._storage = storage
        self._fetcher = fetcher
        self.manifest = manifest
        self._origin = origin
        self._fallback_rules = fallback_rules
        self._max_workers = max_workers

    @property
    def storage(self) -> CacheStorage:
        return self._storage

    @property
    def active_name(self) -> str | None:
        """Name of the active generation, or None before the first precache."""
        name = get_metadata(self._storage.conn, ACTIVE_GENERATION_KEY)
        if name is not None and not self._storage.has(name):
            return None
        return name

    @property
    def active(self) -> CacheGeneration | None:
        name = self.active_name
        return CacheGeneration(self._storage.conn, name) if name is not None else None

    def generation_name(self, manifest: Manifest | None = None) -> str:
        """Name of the generation that holds exactly this manifest's content."""
        manifest = manifest if manifest is not None else self.manifest
        return f"{GENERATION_PREFIX}{manifest.fingerprint()[:12]}"

    def _candidates(self, manifest: Manifest) -> list[Candidate]:
        return [candidate_for(entry.path, entry.digest, self._origin) for entry in manifest.entries()]

    def precache(self, manifest: Manifest | None = None) -> CacheGeneration:
        """Fetch and verify every manifest entry into a fresh generation, then activate it.

        All-or-nothing: if any entry fails, the new generation is discarded
        and the previously active one stays active.

        Args:
            manifest: Deployment to precache. Defaults to the manager's manifest.

        Returns:
            The newly active generation.

        Raises:
            IntegrityMismatch: If any entry fails verification.
            UpstreamUnavailable: If any entry cannot be fetched.
        """
        manifest = manifest if manifest is not None else self.manifest
        name = self.generation_name(manifest)
        previous = self.active_name
        generation = self._storage.open(name)

        logger.info("Precaching %d entries into %s", len(manifest), name)

        errors: list[Exception] = []
        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures = {
                executor.submit(self._fetcher.get, candidate, generation): candidate
                for candidate in self._candidates(manifest)
            }

            for future in as_completed(futures):
                candidate = futures[future]
                try:
                    future.result()
                except Exception as e:
                    logger.error("Failed to precache %s: %s", candidate.path, e)
                    errors.append(e)

        if errors:
            if name != previous:
                self._storage.delete(name)
                logger.info("Discarded incomplete generation %s", name)
            raise errors[0]

        set_metadata(self._storage.conn, ACTIVE_GENERATION_KEY, name)
        self.manifest = manifest
        if name != previous:
            logger.info("Generation %s is now active (was %s)", name, previous)
        return generation

    def uncache(self) -> list[str]:
        """Delete every owned generation except the active one.

        Returns:
            Names of the deleted generations.
        """
        active = self.active_name
        deleted: list[str] = []

        for name in self._storage.keys():
            if not name.startswith(GENERATION_PREFIX):
                continue
            if name == active:
                continue
            self._storage.delete(name)
            deleted.append(name)
            logger.info("Deleted superseded generation %s", name)

        return deleted

    def handle(self, path_or_url: str, reload: bool = False) -> CachedResponse | None:
        """Serve a request from the active generation.

        Returns:
            The verified response, or None if the request is not in the manifest
            and should go to the network untouched.

        Raises:
            IntegrityMismatch: If fetched content fails verification.
            UpstreamUnavailable: If the resource cannot be fetched.
        """
        if self._fallback_rules is None:
            candidates = resolve(path_or_url, self.manifest, self._origin)
        else:
            candidates = resolve(path_or_url, self.manifest, self._origin, self._fallback_rules)

        if not candidates:
            return None

        generation = self.active
        if generation is None:
            # Nothing precached yet: fill the generation this manifest would use,
            # without activating it. precache() will pick up the verified entries.
            generation = self._storage.open(self.generation_name())

        return self._fetcher.get(candidates[0], generation, reload=reload)
