"""Entry point for the WatchWise backend functions."""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

import firebase_admin  # type: ignore[import-untyped]
from firebase_admin import credentials, firestore  # type: ignore[import-untyped]

from watchwise_shared.errors import Unauthenticated
from watchwise_shared.firestore import FirestoreStore
from watchwise_shared.notifications import NotificationDispatcher
from watchwise_shared.scheduler import Scheduler
from watchwise_shared.store import DocumentStore, MemoryStore

from .activity import ActivityTracker
from .api import WatchWiseApi, error_response
from .auth import verify_caller
from .config import FunctionsConfig, load_config
from .pairing import PairingService
from .status import StatusService
from .sweeps import ReconciliationEngine

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool, log_file: Path | None = None) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def init_firebase(config: FunctionsConfig) -> firestore.Client:
    """Initialize Firebase Admin SDK and return Firestore client."""
    if config.firebase_credentials_path is not None:
        cred = credentials.Certificate(str(config.firebase_credentials_path))
        firebase_admin.initialize_app(cred)
    else:
        firebase_admin.initialize_app()
    return firestore.client()


def build_store(config: FunctionsConfig) -> DocumentStore:
    if config.use_memory_store:
        logger.warning("Using in-memory store; nothing will be persisted")
        return MemoryStore()
    store = FirestoreStore(init_firebase(config))
    logger.info("Firebase initialized")
    return store


class Backend:
    """Composition root wiring the services onto one store."""

    def __init__(
        self,
        store: DocumentStore,
        config: FunctionsConfig,
        scheduler: Scheduler | None = None,
    ):
        self.store = store
        self.dispatcher = NotificationDispatcher(store)
        self.pairing = PairingService(
            store,
            self.dispatcher,
            scheduler=scheduler,
            code_ttl=config.sweeps.code_ttl,
        )
        self.activity = ActivityTracker(store)
        self.status = StatusService(store)
        self.sweeps = ReconciliationEngine(store, self.dispatcher, settings=config.sweeps)
        self.api = WatchWiseApi(self.pairing, self.activity, self.status)


def _load(args: argparse.Namespace) -> FunctionsConfig:
    setup_logging(args.verbose, args.log_file)
    if args.config is None:
        return FunctionsConfig()
    config_path: Path = args.config
    if not config_path.exists():
        logger.error("Configuration file not found: %s", config_path)
        sys.exit(1)
    return load_config(config_path)


def cmd_run(args: argparse.Namespace) -> None:
    """Run the scheduled sweeps until interrupted."""
    config = _load(args)
    scheduler = Scheduler()
    backend = Backend(build_store(config), config, scheduler=scheduler)
    backend.sweeps.schedule(scheduler)

    logger.info("Backend running, press Ctrl+C to stop")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        scheduler.shutdown(wait=True)


def cmd_sweep(args: argparse.Namespace) -> None:
    """Run one sweep (or all of them) once."""
    config = _load(args)
    backend = Backend(build_store(config), config)
    if args.name == "all":
        results = backend.sweeps.run_all()
    else:
        results = [backend.sweeps.sweeps[args.name]()]
    for result in results:
        print(
            f"{result.name}: examined={result.examined} changed={result.changed} "
            f"skipped={result.skipped} notifications={result.notifications}"
        )


def cmd_call(args: argparse.Namespace) -> None:
    """Invoke one callable operation and print its response."""
    config = _load(args)
    backend = Backend(build_store(config), config)
    try:
        caller = args.uid if args.uid else verify_caller(args.id_token)
    except Unauthenticated as e:
        print(json.dumps(error_response(e), indent=2))
        sys.exit(1)
    try:
        data = json.loads(args.data)
    except json.JSONDecodeError as e:
        logger.error("Invalid --data JSON: %s", e)
        sys.exit(2)
    response = backend.api.call(args.operation, caller, data)
    print(json.dumps(response, indent=2, default=str))
    if "error" in response:
        sys.exit(1)


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="WatchWise backend functions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  watchwise-functions run                       Run the scheduled sweeps
  watchwise-functions sweep heartbeats          Run the missed-heartbeat sweep once
  watchwise-functions call submitCode --uid PARENT --data '{"code": "482913"}'
""",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write logs to this file",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the scheduled sweeps")
    run_parser.set_defaults(func=cmd_run)

    sweep_parser = subparsers.add_parser("sweep", help="Run a sweep once")
    sweep_parser.add_argument(
        "name",
        choices=["codes", "purge", "inactivity", "heartbeats", "all"],
        help="Which sweep to run",
    )
    sweep_parser.set_defaults(func=cmd_sweep)

    call_parser = subparsers.add_parser("call", help="Invoke a callable operation")
    call_parser.add_argument(
        "operation",
        choices=["generateCode", "submitCode", "unpair", "recordActivity", "listChildren"],
    )
    identity = call_parser.add_mutually_exclusive_group(required=True)
    identity.add_argument("--uid", help="Caller user id (trusted)")
    identity.add_argument("--id-token", help="Firebase ID token of the caller")
    call_parser.add_argument(
        "--data",
        default="{}",
        help="Request payload as JSON",
    )
    call_parser.set_defaults(func=cmd_call)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
