"""Build manifest: the immutable mapping of resource path to expected digest."""

import hashlib
import json
import logging
import os
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path

import yaml

from .integrity import compute_digest
from .models import ManifestEntry

logger = logging.getLogger(__name__)


class ManifestError(Exception):
    """Raised when a manifest is malformed or cannot be loaded."""

    pass


def normalize_path(path: str) -> str:
    """Canonicalize a manifest path.

    Paths start with "/" and carry no trailing slash, except the root "/".
    """
    if not path.startswith("/"):
        path = "/" + path
    while len(path) > 1 and path.endswith("/"):
        path = path[:-1]
    return path


class Manifest(Mapping[str, str]):
    """Read-only mapping of normalized path -> digest.

    Example:
        manifest = Manifest({"/index.html": "ab12...", "/app.js": "cd34..."})
        manifest.get("/index.html")
    """

    def __init__(self, entries: Mapping[str, str] | Iterable[tuple[str, str]] = ()) -> None:
        items = entries.items() if isinstance(entries, Mapping) else entries
        files: dict[str, str] = {}

        for raw_path, digest in items:
            if not isinstance(raw_path, str) or not raw_path:
                raise ManifestError(f"Manifest path must be a non-empty string, got {raw_path!r}")
            if not isinstance(digest, str) or not digest:
                raise ManifestError(f"Manifest digest for '{raw_path}' must be a non-empty string")

            path = normalize_path(raw_path)
            previous = files.get(path)
            if previous is not None and previous != digest:
                raise ManifestError(f"Conflicting digests for '{path}'")
            files[path] = digest

        self._files = files

    def __getitem__(self, path: str) -> str:
        return self._files[path]

    def __iter__(self) -> Iterator[str]:
        return iter(self._files)

    def __len__(self) -> int:
        return len(self._files)

    def __repr__(self) -> str:
        return f"Manifest({len(self._files)} entries)"

    def entries(self) -> list[ManifestEntry]:
        """Return the manifest as a list of entries, sorted by path."""
        return [ManifestEntry(path, self._files[path]) for path in sorted(self._files)]

    def fingerprint(self) -> str:
        """Return a hex SHA-256 identifying this exact set of entries.

        Independent of insertion order, so two loads of the same deployment
        always agree.
        """
        hasher = hashlib.sha256()
        for entry in self.entries():
            hasher.update(entry.path.encode("utf-8"))
            hasher.update(b"\0")
            hasher.update(entry.digest.encode("utf-8"))
            hasher.update(b"\n")
        return hasher.hexdigest()


def load_manifest(manifest_path: str) -> Manifest:
    """Load a manifest from a JSON or YAML file.

    The file holds either a mapping of path to digest, or a list of
    [path, digest] pairs.

    Args:
        manifest_path: Path to the manifest file.

    Returns:
        Validated Manifest.

    Raises:
        ManifestError: If the file cannot be read or is malformed.
    """
    path = Path(manifest_path)

    if not path.exists():
        raise ManifestError(f"Manifest file not found: {manifest_path}")

    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ManifestError(f"Failed to parse manifest: {e}")
    except OSError as e:
        raise ManifestError(f"Failed to read manifest file: {e}")

    if isinstance(data, dict):
        return Manifest(data)

    if isinstance(data, list):
        pairs: list[tuple[str, str]] = []
        for index, item in enumerate(data):
            if not isinstance(item, (list, tuple)) or len(item) != 2:
                raise ManifestError(f"Manifest entry {index} must be a [path, digest] pair")
            pairs.append((item[0], item[1]))
        return Manifest(pairs)

    raise ManifestError("Manifest must be a mapping or a list of [path, digest] pairs")


def walk_files(root: str) -> Iterator[str]:
    """Yield every file under root, depth-first, in sorted name order."""
    with os.scandir(root) as it:
        entries = sorted(it, key=lambda entry: entry.name)

    for entry in entries:
        if entry.is_dir():
            yield from walk_files(entry.path)
        else:
            yield entry.path


def build_manifest(root: str, scheme: str = "content-hash") -> Manifest:
    """Hash every file under a static export directory.

    Args:
        root: Directory to walk.
        scheme: Digest scheme to emit.

    Returns:
        Manifest mapping "/relative/path" to digest.

    Raises:
        ManifestError: If root is not a directory.
    """
    if not os.path.isdir(root):
        raise ManifestError(f"Not a directory: {root}")

    files: dict[str, str] = {}
    for file_path in walk_files(root):
        relative = Path(file_path).relative_to(root).as_posix()
        with open(file_path, "rb") as f:
            files["/" + relative] = compute_digest(f.read(), scheme)

    logger.debug("Hashed %d files under %s", len(files), root)
    return Manifest(files)


def dump_manifest(manifest: Manifest) -> str:
    """Serialize a manifest as JSON, sorted by path."""
    return json.dumps({entry.path: entry.digest for entry in manifest.entries()}, indent=2)
