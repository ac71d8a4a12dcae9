"""Tests for the configuration module."""

from pathlib import Path

import pytest

from stickyproxy.config import (
    FALLBACK_RULES,
    IntegrityConfig,
    ProxyConfig,
    ConfigError,
    ResolverConfig,
    ServerConfig,
    WorkerConfig,
    load_config,
)


@pytest.fixture
def valid_config_content() -> str:
    """Return a valid configuration YAML content."""
    return """origin: https://app.example.com
manifest: manifest.json

worker:
  script: /sw.js
  version_style: hashed
  version_length: 8
  check_updates: false

integrity:
  digest_scheme: transport-integrity
  strict_header_check: true

resolver:
  fallback_rules: [html, dir-index]

storage:
  path: ./data/state.db
  key_prefix: app1.

server:
  port: 9090
"""


@pytest.fixture
def config_file(tmp_path: Path, valid_config_content: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(valid_config_content)
    return path


class TestWorkerConfig:
    """Tests for WorkerConfig dataclass."""

    def test_defaults(self) -> None:
        """Default worker config uses 6-character basename versions."""
        worker = WorkerConfig()
        assert worker.script == "/service_worker.js"
        assert worker.version_style == "basename"
        assert worker.version_length == 6
        assert worker.check_updates is True

    def test_rejects_relative_script(self) -> None:
        """Script path must be absolute."""
        with pytest.raises(ConfigError, match="absolute path"):
            WorkerConfig(script="sw.js")

    def test_rejects_unknown_version_style(self) -> None:
        """Unknown version styles are rejected."""
        with pytest.raises(ConfigError, match="version_style"):
            WorkerConfig(version_style="suffix")

    @pytest.mark.parametrize("length", [0, 3, 65])
    def test_rejects_bad_version_length(self, length: int) -> None:
        """Version length must be within bounds."""
        with pytest.raises(ConfigError, match="version_length"):
            WorkerConfig(version_length=length)


class TestIntegrityConfig:
    """Tests for IntegrityConfig dataclass."""

    def test_defaults_to_permissive_content_hash(self) -> None:
        """Default is content-hash digests with warnings only."""
        integrity = IntegrityConfig()
        assert integrity.digest_scheme == "content-hash"
        assert integrity.strict_header_check is False

    def test_rejects_unknown_scheme(self) -> None:
        """Unknown digest schemes are rejected."""
        with pytest.raises(ConfigError, match="digest_scheme"):
            IntegrityConfig(digest_scheme="md5")


class TestResolverConfig:
    """Tests for ResolverConfig dataclass."""

    def test_default_rules(self) -> None:
        """All rules are enabled by default, in canonical order."""
        assert ResolverConfig().fallback_rules == FALLBACK_RULES

    def test_rejects_unknown_rule(self) -> None:
        """Unknown rule names are rejected."""
        with pytest.raises(ConfigError, match="Unknown fallback rule"):
            ResolverConfig(fallback_rules=("html", "php"))

    def test_rejects_duplicate_rule(self) -> None:
        """A rule may appear only once."""
        with pytest.raises(ConfigError, match="Duplicate"):
            ResolverConfig(fallback_rules=("html", "html"))


class TestProxyConfig:
    """Tests for ProxyConfig dataclass."""

    def test_rejects_non_http_origin(self) -> None:
        """Origin must be an http(s) URL."""
        with pytest.raises(ConfigError, match="Origin must start with"):
            ProxyConfig(origin="ftp://example.com", manifest="m.json")

    def test_rejects_empty_manifest(self) -> None:
        """Manifest path is required."""
        with pytest.raises(ConfigError, match="Manifest path"):
            ProxyConfig(origin="https://example.com", manifest="")

    def test_worker_url_joins_origin_and_script(self) -> None:
        """Canonical worker URL is origin + script path."""
        config = ProxyConfig(origin="https://example.com/", manifest="m.json", worker=WorkerConfig(script="/sw.js"))
        assert config.worker_url == "https://example.com/sw.js"

    def test_options_collects_deployment_knobs(self) -> None:
        """options exposes digest scheme, strictness, rules and prefix together."""
        config = ProxyConfig(
            origin="https://example.com",
            manifest="m.json",
            integrity=IntegrityConfig(strict_header_check=True),
        )
        options = config.options
        assert options.digest_scheme == "content-hash"
        assert options.strict_header_check is True
        assert options.fallback_rules == FALLBACK_RULES
        assert options.key_prefix == ""

    def test_rejects_bad_port(self) -> None:
        """Server port must be valid."""
        with pytest.raises(ConfigError, match="port"):
            ServerConfig(port=70000)


class TestLoadConfig:
    """Tests for load_config function."""

    def test_loads_valid_config(self, config_file: Path) -> None:
        """All sections are parsed."""
        config = load_config(str(config_file))

        assert config.origin == "https://app.example.com"
        assert config.worker.script == "/sw.js"
        assert config.worker.version_style == "hashed"
        assert config.worker.version_length == 8
        assert config.worker.check_updates is False
        assert config.integrity.digest_scheme == "transport-integrity"
        assert config.integrity.strict_header_check is True
        assert config.resolver.fallback_rules == ("html", "dir-index")
        assert config.storage.key_prefix == "app1."
        assert config.server.port == 9090

    def test_manifest_path_is_relative_to_config(self, config_file: Path) -> None:
        """A relative manifest path is resolved next to the config file."""
        config = load_config(str(config_file))
        assert Path(config.manifest) == config_file.parent / "manifest.json"

    def test_missing_file(self, tmp_path: Path) -> None:
        """Missing file raises ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_empty_file(self, tmp_path: Path) -> None:
        """Empty file raises ConfigError."""
        path = tmp_path / "config.yaml"
        path.write_text("")
        with pytest.raises(ConfigError, match="empty"):
            load_config(str(path))

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Unparseable YAML raises ConfigError."""
        path = tmp_path / "config.yaml"
        path.write_text("origin: [unclosed")
        with pytest.raises(ConfigError, match="Failed to parse YAML"):
            load_config(str(path))

    def test_missing_origin(self, tmp_path: Path) -> None:
        """Origin is required."""
        path = tmp_path / "config.yaml"
        path.write_text("manifest: m.json\n")
        with pytest.raises(ConfigError, match="origin"):
            load_config(str(path))

    def test_fallback_rules_must_be_list(self, tmp_path: Path) -> None:
        """fallback_rules must be a YAML list."""
        path = tmp_path / "config.yaml"
        path.write_text("origin: https://a.example\nmanifest: m.json\nresolver:\n  fallback_rules: html\n")
        with pytest.raises(ConfigError, match="must be a list"):
            load_config(str(path))

    def test_section_must_be_dict(self, tmp_path: Path) -> None:
        """Sections must be mappings."""
        path = tmp_path / "config.yaml"
        path.write_text("origin: https://a.example\nmanifest: m.json\nworker: sw.js\n")
        with pytest.raises(ConfigError, match="'worker' section"):
            load_config(str(path))

    def test_env_overrides(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Environment variables override file values."""
        monkeypatch.setenv("STICKYPROXY_ORIGIN", "https://other.example")
        monkeypatch.setenv("STICKYPROXY_SERVER_PORT", "8181")
        monkeypatch.setenv("STICKYPROXY_STRICT_HEADERS", "false")
        monkeypatch.setenv("STICKYPROXY_KEY_PREFIX", "app2.")
        monkeypatch.setenv("STICKYPROXY_DEVELOPMENT", "yes")

        config = load_config(str(config_file))

        assert config.origin == "https://other.example"
        assert config.server.port == 8181
        assert config.integrity.strict_header_check is False
        assert config.storage.key_prefix == "app2."
        assert config.development is True

    def test_invalid_integer_value(self, tmp_path: Path) -> None:
        """Non-numeric integers raise ConfigError."""
        path = tmp_path / "config.yaml"
        path.write_text("origin: https://a.example\nmanifest: m.json\nserver:\n  port: eighty\n")
        with pytest.raises(ConfigError, match="Invalid configuration value"):
            load_config(str(path))
