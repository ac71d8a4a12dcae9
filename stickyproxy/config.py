"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# Digest schemes understood by the integrity layer.
# content-hash: lowercase hex SHA-256 of the body.
# transport-integrity: subresource-integrity token such as "sha256-<base64>".
DIGEST_SCHEMES = ("content-hash", "transport-integrity")

# Ways to build a version-qualified worker URL from the canonical one.
# basename: /sw.js -> /sw.<token>.js
# hashed:   /sw.js -> /sw.<token>.h.js
# query:    /sw.js -> /sw.js?version=<token>
VERSION_STYLES = ("basename", "hashed", "query")

# Static-site fallback rules, in default priority order.
FALLBACK_RULES = (
    "index",
    "html",
    "dir-index",
    "hidden-index",
    "hidden-dir-index",
    "hidden-html",
    "hidden-name-index",
)

# Version tokens shorter than this collide too easily to be worth pinning.
MIN_VERSION_LENGTH = 4


@dataclass(frozen=True)
class WorkerConfig:
    """Configuration for the self-updating worker script."""

    script: str = "/service_worker.js"
    version_style: str = "basename"
    version_length: int = 6  # hex characters of the SHA-256 digest
    check_updates: bool = True

    def __post_init__(self) -> None:
        if not self.script:
            raise ConfigError("Worker script path cannot be empty")
        if not self.script.startswith("/"):
            raise ConfigError(f"Worker script must be an absolute path starting with '/' (got '{self.script}')")
        if self.version_style not in VERSION_STYLES:
            raise ConfigError(
                f"Invalid worker version_style '{self.version_style}'. Must be one of: {VERSION_STYLES}"
            )
        if not (MIN_VERSION_LENGTH <= self.version_length <= 64):
            raise ConfigError(
                f"Worker version_length must be between {MIN_VERSION_LENGTH} and 64 (got {self.version_length})"
            )


@dataclass(frozen=True)
class IntegrityConfig:
    """Configuration for content verification.

    - digest_scheme: How manifest digests are expressed and checked.
    - strict_header_check: Fail registration when the worker script is not served
      with the immutable cache contract, or when its version-qualified copy is
      missing. When False, those problems are logged as warnings.
    """

    digest_scheme: str = "content-hash"
    strict_header_check: bool = False

    def __post_init__(self) -> None:
        if self.digest_scheme not in DIGEST_SCHEMES:
            raise ConfigError(
                f"Invalid digest_scheme '{self.digest_scheme}'. Must be one of: {DIGEST_SCHEMES}"
            )


@dataclass(frozen=True)
class ResolverConfig:
    """Configuration for the static-site fallback search."""

    fallback_rules: tuple[str, ...] = FALLBACK_RULES

    def __post_init__(self) -> None:
        if not isinstance(self.fallback_rules, tuple):
            raise ConfigError("Resolver fallback_rules must be a tuple")
        for rule in self.fallback_rules:
            if rule not in FALLBACK_RULES:
                raise ConfigError(f"Unknown fallback rule '{rule}'. Must be one of: {FALLBACK_RULES}")
        duplicates = {rule for rule in self.fallback_rules if self.fallback_rules.count(rule) > 1}
        if duplicates:
            raise ConfigError(f"Duplicate fallback rules found: {duplicates}")


def _get_default_db_path() -> str:
    """Get the default state database path using XDG-compliant directory.

    Returns ~/.local/share/stickyproxy/state.db which is the standard
    location for user-specific data files on Linux/macOS.
    """
    home = Path.home()
    return str(home / ".local" / "share" / "stickyproxy" / "state.db")


# Default state database path (XDG-compliant user data directory)
DEFAULT_DB_PATH = _get_default_db_path()


@dataclass(frozen=True)
class StorageConfig:
    """Configuration for the SQLite state and cache store."""

    path: str = DEFAULT_DB_PATH
    key_prefix: str = ""  # namespaces persisted keys when several apps share one store

    def __post_init__(self) -> None:
        if not self.path:
            raise ConfigError("Storage path cannot be empty")


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for outgoing HTTP requests."""

    timeout: int = 30
    user_agent: str = "StickyProxy/0.1"

    def __post_init__(self) -> None:
        if self.timeout < 1:
            raise ConfigError(f"Network timeout must be at least 1 second (got {self.timeout})")
        if not self.user_agent:
            raise ConfigError("Network User-Agent cannot be empty")


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the local proxy HTTP server."""

    enabled: bool = True
    port: int = 8080

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Server port must be between 1 and 65535, got {self.port}")


@dataclass(frozen=True)
class ProxyOptions:
    """The knobs that distinguish one proxy deployment from another."""

    digest_scheme: str
    strict_header_check: bool
    fallback_rules: tuple[str, ...]
    key_prefix: str


@dataclass(frozen=True)
class ProxyConfig:
    """Main configuration container."""

    origin: str
    manifest: str
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    integrity: IntegrityConfig = field(default_factory=IntegrityConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    development: bool = False

    def __post_init__(self) -> None:
        if not self.origin:
            raise ConfigError("Origin cannot be empty")
        if not self.origin.startswith(("http://", "https://")):
            raise ConfigError(f"Origin must start with http:// or https://, got '{self.origin}'")
        if not self.manifest:
            raise ConfigError("Manifest path cannot be empty")

    @property
    def options(self) -> ProxyOptions:
        """Return the deployment options as a single struct."""
        return ProxyOptions(
            digest_scheme=self.integrity.digest_scheme,
            strict_header_check=self.integrity.strict_header_check,
            fallback_rules=self.resolver.fallback_rules,
            key_prefix=self.storage.key_prefix,
        )

    @property
    def worker_url(self) -> str:
        """Return the canonical absolute URL of the worker script."""
        return self.origin.rstrip("/") + self.worker.script


def _section(data: dict, name: str) -> dict | None:
    """Return a config section, checking that it is a dictionary."""
    section = data.get(name)
    if section is None:
        return None
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be a dictionary")
    return section


def _parse_worker_config(data: dict | None) -> WorkerConfig:
    """Parse worker configuration section."""
    if data is None:
        return WorkerConfig()

    return WorkerConfig(
        script=str(data.get("script", "/service_worker.js")),
        version_style=str(data.get("version_style", "basename")),
        version_length=int(data.get("version_length", 6)),
        check_updates=bool(data.get("check_updates", True)),
    )


def _parse_integrity_config(data: dict | None) -> IntegrityConfig:
    """Parse integrity configuration section."""
    if data is None:
        return IntegrityConfig()

    return IntegrityConfig(
        digest_scheme=str(data.get("digest_scheme", "content-hash")),
        strict_header_check=bool(data.get("strict_header_check", False)),
    )


def _parse_resolver_config(data: dict | None) -> ResolverConfig:
    """Parse resolver configuration section."""
    if data is None:
        return ResolverConfig()

    rules = data.get("fallback_rules")
    if rules is None:
        return ResolverConfig()
    if not isinstance(rules, list):
        raise ConfigError("'resolver.fallback_rules' must be a list")

    return ResolverConfig(fallback_rules=tuple(str(rule) for rule in rules))


def _parse_storage_config(data: dict | None) -> StorageConfig:
    """Parse storage configuration section."""
    if data is None:
        return StorageConfig()

    return StorageConfig(
        path=os.path.expanduser(str(data.get("path", DEFAULT_DB_PATH))),
        key_prefix=str(data.get("key_prefix", "")),
    )


def _parse_network_config(data: dict | None) -> NetworkConfig:
    """Parse network configuration section."""
    if data is None:
        return NetworkConfig()

    return NetworkConfig(
        timeout=int(data.get("timeout", 30)),
        user_agent=str(data.get("user_agent", "StickyProxy/0.1")),
    )


def _parse_server_config(data: dict | None) -> ServerConfig:
    """Parse server configuration section."""
    if data is None:
        return ServerConfig()

    return ServerConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8080)),
    )


def _env_flag(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - STICKYPROXY_ORIGIN: Override origin
    - STICKYPROXY_MANIFEST: Override manifest
    - STICKYPROXY_DB_PATH: Override storage.path
    - STICKYPROXY_KEY_PREFIX: Override storage.key_prefix
    - STICKYPROXY_SERVER_PORT: Override server.port
    - STICKYPROXY_STRICT_HEADERS: Override integrity.strict_header_check (true/false)
    - STICKYPROXY_DEVELOPMENT: Override development (true/false)
    """
    for section in ("storage", "server", "integrity"):
        if config_data.get(section) is None:
            config_data[section] = {}

    origin = os.environ.get("STICKYPROXY_ORIGIN")
    if origin is not None:
        config_data["origin"] = origin

    manifest = os.environ.get("STICKYPROXY_MANIFEST")
    if manifest is not None:
        config_data["manifest"] = manifest

    db_path = os.environ.get("STICKYPROXY_DB_PATH")
    if db_path is not None:
        config_data["storage"]["path"] = db_path

    key_prefix = os.environ.get("STICKYPROXY_KEY_PREFIX")
    if key_prefix is not None:
        config_data["storage"]["key_prefix"] = key_prefix

    server_port = os.environ.get("STICKYPROXY_SERVER_PORT")
    if server_port is not None:
        config_data["server"]["port"] = int(server_port)

    strict = os.environ.get("STICKYPROXY_STRICT_HEADERS")
    if strict is not None:
        config_data["integrity"]["strict_header_check"] = _env_flag(strict)

    development = os.environ.get("STICKYPROXY_DEVELOPMENT")
    if development is not None:
        config_data["development"] = _env_flag(development)

    return config_data


def load_config(config_path: str) -> ProxyConfig:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated ProxyConfig object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    origin = data.get("origin")
    if origin is None:
        raise ConfigError("Configuration is missing 'origin' field")

    manifest = data.get("manifest")
    if manifest is None:
        raise ConfigError("Configuration is missing 'manifest' field")

    # Relative manifest paths are relative to the configuration file
    manifest_path = Path(os.path.expanduser(str(manifest)))
    if not manifest_path.is_absolute():
        manifest_path = path.parent / manifest_path

    try:
        return ProxyConfig(
            origin=str(origin),
            manifest=str(manifest_path),
            worker=_parse_worker_config(_section(data, "worker")),
            integrity=_parse_integrity_config(_section(data, "integrity")),
            resolver=_parse_resolver_config(_section(data, "resolver")),
            storage=_parse_storage_config(_section(data, "storage")),
            network=_parse_network_config(_section(data, "network")),
            server=_parse_server_config(_section(data, "server")),
            development=bool(data.get("development", False)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
