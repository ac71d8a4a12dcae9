"""StickyProxy - verified content-addressed asset proxy with sticky self-updates."""

import argparse
import logging
import signal
import sys
from dataclasses import dataclass
from threading import Event
from typing import Any, Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


@dataclass
class _Components:
    """Everything one client context needs, constructed once and passed around."""

    conn: Any
    session: Any
    store: Any
    host: Any
    coordinator: Any
    manager: Any

    def close(self) -> None:
        self.session.close()
        self.conn.close()


def _load(args: argparse.Namespace):
    """Load configuration or exit with an error message."""
    from .config import ConfigError, load_config

    try:
        return load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)


def _open_components(config) -> _Components:
    """Wire up store, host, coordinator and cache for one client context."""
    import requests

    from .cache import CacheGenerationManager, CacheStorage
    from .coordinator import UpdateCoordinator
    from .database import StateStore, init_db
    from .fetcher import VerifiedFetcher
    from .host import LocalWorkerHost
    from .manifest import load_manifest

    manifest = load_manifest(config.manifest)
    conn = init_db(config.storage.path)
    session = requests.Session()
    options = config.options

    store = StateStore(conn, key_prefix=options.key_prefix)
    host = LocalWorkerHost(
        conn,
        session,
        timeout=config.network.timeout,
        user_agent=config.network.user_agent,
        scope=options.key_prefix,
    )
    coordinator = UpdateCoordinator(config, store, host, session)
    fetcher = VerifiedFetcher(
        session,
        digest_scheme=options.digest_scheme,
        timeout=config.network.timeout,
        user_agent=config.network.user_agent,
    )
    manager = CacheGenerationManager(
        CacheStorage(conn),
        fetcher,
        manifest,
        config.origin,
        fallback_rules=options.fallback_rules,
    )
    return _Components(conn, session, store, host, coordinator, manager)


def _open_or_exit(config) -> _Components:
    """Open components or exit with an error message."""
    from .database import DatabaseError
    from .manifest import ManifestError

    try:
        return _open_components(config)
    except (DatabaseError, ManifestError) as e:
        print(f"Error: {e}")
        sys.exit(1)


def _cmd_serve(args: argparse.Namespace) -> None:
    """Execute the serve command - register, precache and run the proxy."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("StickyProxy %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .coordinator import CoordinatorError
    from .database import DatabaseError
    from .fetcher import UpstreamUnavailable
    from .host import HostError
    from .integrity import IntegrityMismatch, RegistrationContractViolation
    from .manifest import ManifestError
    from .server import ProxyError, ProxyServer

    # 1. Load configuration
    config = _load(args)
    logger.info("Configuration loaded from %s", args.config)

    # 2. Open storage and wire components
    try:
        components = _open_components(config)
        logger.info("State store opened at %s", config.storage.path)
    except (DatabaseError, ManifestError) as e:
        logger.error("Startup error: %s", e)
        sys.exit(1)

    # 3. Register the pinned worker
    try:
        update = components.coordinator.register()
        if update is not None:
            logger.info("Worker version %s is available; run 'stickyproxy register --apply'", update.version)
    except (CoordinatorError, RegistrationContractViolation, UpstreamUnavailable, HostError) as e:
        logger.error("Worker registration failed: %s", e)
        components.close()
        sys.exit(1)

    # 4. Precache the manifest and drop superseded generations
    if not config.development:
        try:
            components.manager.precache()
            components.manager.uncache()
        except (IntegrityMismatch, UpstreamUnavailable) as e:
            logger.error("Precache failed: %s", e)
            logger.warning("Continuing with generation %s", components.manager.active_name)

    # 5. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    server: Optional[ProxyServer] = None

    try:
        if config.server.enabled:
            try:
                server = ProxyServer(config, components.manager, components.store, components.session)
                server.start()
            except ProxyError as e:
                logger.error("Failed to start proxy server: %s", e)
                sys.exit(1)

        logger.info("All components started, waiting for shutdown signal...")

        # 6. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 7. Cleanup - stop all components
        logger.info("Shutting down components...")

        if server is not None:
            server.stop()

        components.close()
        logger.info("Shutdown complete")


def _cmd_precache(args: argparse.Namespace) -> None:
    """Execute the precache command - build a new generation and collect old ones."""
    _setup_logging(args.verbose)

    from .fetcher import UpstreamUnavailable
    from .integrity import IntegrityMismatch

    config = _load(args)
    components = _open_or_exit(config)

    try:
        generation = components.manager.precache()
        deleted = components.manager.uncache()
        print(f"Precached {generation.count()} entries into {generation.name}.")
        print(f"Deleted {len(deleted)} superseded generation(s).")
    except (IntegrityMismatch, UpstreamUnavailable) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        components.close()


def _cmd_uncache(args: argparse.Namespace) -> None:
    """Execute the uncache command - delete every generation but the active one."""
    config = _load(args)
    components = _open_or_exit(config)

    try:
        deleted = components.manager.uncache()
    finally:
        components.close()

    for name in deleted:
        print(f"Deleted {name}")
    print(f"Deleted {len(deleted)} generation(s).")


def _cmd_register(args: argparse.Namespace) -> None:
    """Execute the register command - install the pinned worker, optionally update it."""
    _setup_logging(args.verbose)

    from .coordinator import CoordinatorError
    from .fetcher import UpstreamUnavailable
    from .host import HostError
    from .integrity import RegistrationContractViolation

    config = _load(args)
    components = _open_or_exit(config)

    try:
        update = components.coordinator.register()
        if update is None:
            print(f"Worker pinned at version {components.store.current_version}.")
            return

        print(f"Worker version {update.version} is available (pinned: {components.store.current_version}).")
        if args.apply:
            components.coordinator.apply_update(update)
            print(f"Worker updated to version {components.store.current_version}.")
    except (CoordinatorError, RegistrationContractViolation, UpstreamUnavailable, HostError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        components.close()


def _cmd_status(args: argparse.Namespace) -> None:
    """Execute the status command - print version state and generations."""
    config = _load(args)
    components = _open_or_exit(config)

    try:
        state = components.store.version_state()
        active = components.manager.active_name
        registration = components.host.get_registration()

        print(f"Current version: {state.current_version or '-'}")
        print(f"Pending version: {state.pending_version or '-'}")
        print(f"Bricked:         {'yes' if state.bricked else 'no'}")
        if registration is not None and registration.active is not None:
            print(f"Active worker:   {registration.active.script_url}")
        else:
            print("Active worker:   -")
        print("Generations:")
        for name in components.manager.storage.keys():
            marker = "*" if name == active else " "
            count = components.manager.storage.open(name).count()
            print(f"  {marker} {name} ({count} entries)")
    finally:
        components.close()


def _cmd_resolve(args: argparse.Namespace) -> None:
    """Execute the resolve command - show the fallback search for a path."""
    from .manifest import ManifestError, load_manifest
    from .resolver import candidate_paths, resolve

    config = _load(args)
    try:
        manifest = load_manifest(config.manifest)
    except ManifestError as e:
        print(f"Error: {e}")
        sys.exit(1)

    rules = config.resolver.fallback_rules
    for path in candidate_paths(args.path, rules):
        marker = "+" if path in manifest else "-"
        print(f"{marker} {path}")

    candidates = resolve(args.path, manifest, config.origin, rules)
    if not candidates:
        print("Not in manifest: request goes to the network.")
        sys.exit(1)
    print(f"Resolved to {candidates[0].url} ({candidates[0].digest})")


def _cmd_manifest(args: argparse.Namespace) -> None:
    """Execute the manifest command - hash a static export directory."""
    from .manifest import ManifestError, build_manifest, dump_manifest

    try:
        manifest = build_manifest(args.directory, scheme=args.scheme)
    except ManifestError as e:
        print(f"Error: {e}")
        sys.exit(1)

    output = dump_manifest(manifest)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(output + "\n")
        print(f"Wrote {len(manifest)} entries to {args.output}")
    else:
        print(output)


def _add_config_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )


def main() -> None:
    """Main entry point for the stickyproxy package."""
    parser = argparse.ArgumentParser(
        description="StickyProxy - verified asset proxy with sticky self-updates"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"stickyproxy {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Serve subcommand (default behavior)
    serve_parser = subparsers.add_parser(
        "serve",
        help="Register the worker, precache and run the proxy (default)",
    )
    _add_config_argument(serve_parser)
    serve_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    serve_parser.set_defaults(func=_cmd_serve)

    # Precache subcommand
    precache_parser = subparsers.add_parser(
        "precache",
        help="Fetch and verify every manifest entry into a new generation",
    )
    _add_config_argument(precache_parser)
    precache_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    precache_parser.set_defaults(func=_cmd_precache)

    # Uncache subcommand
    uncache_parser = subparsers.add_parser(
        "uncache",
        help="Delete every cache generation except the active one",
    )
    _add_config_argument(uncache_parser)
    uncache_parser.set_defaults(func=_cmd_uncache)

    # Register subcommand
    register_parser = subparsers.add_parser(
        "register",
        help="Install the pinned worker and check for updates",
    )
    _add_config_argument(register_parser)
    register_parser.add_argument(
        "--apply",
        action="store_true",
        help="Install an available update",
    )
    register_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    register_parser.set_defaults(func=_cmd_register)

    # Status subcommand
    status_parser = subparsers.add_parser(
        "status",
        help="Show version state and cache generations",
    )
    _add_config_argument(status_parser)
    status_parser.set_defaults(func=_cmd_status)

    # Resolve subcommand
    resolve_parser = subparsers.add_parser(
        "resolve",
        help="Show how a request path resolves against the manifest",
    )
    _add_config_argument(resolve_parser)
    resolve_parser.add_argument("path", help="Request path, e.g. /about/")
    resolve_parser.set_defaults(func=_cmd_resolve)

    # Manifest subcommand
    manifest_parser = subparsers.add_parser(
        "manifest",
        help="Build a manifest from a static export directory",
    )
    manifest_parser.add_argument("directory", help="Directory to hash")
    manifest_parser.add_argument(
        "-o", "--output",
        help="Write the manifest to this file instead of stdout",
    )
    manifest_parser.add_argument(
        "--scheme",
        choices=["content-hash", "transport-integrity"],
        default="content-hash",
        help="Digest scheme (default: content-hash)",
    )
    manifest_parser.set_defaults(func=_cmd_manifest)

    args = parser.parse_args()

    # Default to 'serve' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_serve

    args.func(args)
