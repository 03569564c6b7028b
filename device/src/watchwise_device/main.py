"""Entry point for the WatchWise child device agent."""

import argparse
import logging
import sys
from pathlib import Path

import firebase_admin  # type: ignore[import-untyped]
from firebase_admin import credentials, firestore  # type: ignore[import-untyped]
from pydantic import ValidationError

from watchwise_functions.activity import ActivityTracker
from watchwise_functions.pairing import PairingService
from watchwise_shared import BedtimeSettings
from watchwise_shared.errors import WatchWiseError
from watchwise_shared.firestore import FirestoreStore
from watchwise_shared.notifications import NotificationDispatcher
from watchwise_shared.store import DocumentStore

from .apps import app_display_name, format_duration
from .cache import LocalCache
from .config import DeviceConfig, load_config
from .deleted_apps import DeletedAppDetector
from .heartbeat import HeartbeatSender
from .loop import DeviceAgent, run_device_loop
from .new_apps import NewAppDetector
from .restrictions import RestrictionSynchronizer
from .usage import UsageSpool

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


def init_firebase(config: DeviceConfig) -> firestore.Client:
    """Initialize Firebase Admin SDK and return Firestore client."""
    if config.firebase_credentials_path is not None:
        cred = credentials.Certificate(str(config.firebase_credentials_path))
        firebase_admin.initialize_app(cred)
    else:
        firebase_admin.initialize_app()
    return firestore.client()


def build_agent(config: DeviceConfig, store: DocumentStore) -> DeviceAgent:
    cache = LocalCache(config.cache_dir)
    dispatcher = NotificationDispatcher(store)
    tracker = ActivityTracker(store)
    return DeviceAgent(
        synchronizer=RestrictionSynchronizer(
            store, cache, dispatcher, config.parent_id, timezone=config.tz
        ),
        detector=NewAppDetector(
            store, cache, dispatcher, config.parent_id, device_id=config.device_id
        ),
        heartbeat=HeartbeatSender(
            tracker.record_activity, config.user_id, device_info=config.device_info
        ),
        spool=UsageSpool(config.usage_spool_path),
        deletions=DeletedAppDetector(
            store, cache, config.parent_id, device_id=config.device_id
        ),
    )


def _load(args: argparse.Namespace) -> DeviceConfig:
    setup_logging(args.verbose, args.log_file)
    config_path: Path = args.config
    if not config_path.exists():
        logger.error("Configuration file not found: %s", config_path)
        sys.exit(1)
    config = load_config(config_path)
    logger.debug("Loaded configuration for device: %s", config.device_name)
    return config


def _connect(config: DeviceConfig) -> DocumentStore:
    store = FirestoreStore(init_firebase(config))
    logger.debug("Firebase initialized")
    return store


def cmd_run(args: argparse.Namespace) -> None:
    """Run the device agent."""
    config = _load(args)
    agent = build_agent(config, _connect(config))
    logger.info("Starting device agent for %s", config.child_name)
    run_device_loop(agent, config)


def cmd_request_code(args: argparse.Namespace) -> None:
    """Request a pairing code to show to the parent."""
    config = _load(args)
    store = _connect(config)
    pairing = PairingService(store, NotificationDispatcher(store))
    issued = pairing.generate_code(
        config.user_id, config.child_name, config.device_name, config.device_info
    )
    print(f"Pairing code: {issued.code}")
    print(f"Expires at:   {issued.expires_at:%H:%M:%S} UTC")


def cmd_limit(args: argparse.Namespace) -> None:
    config = _load(args)
    agent = build_agent(config, _connect(config))
    restriction = agent.synchronizer.set_limit(args.bundle_id, args.minutes * 60)
    print(
        f"{app_display_name(restriction.bundle_id)}: limit "
        f"{format_duration(restriction.time_limit)}"
    )


def cmd_disable(args: argparse.Namespace) -> None:
    config = _load(args)
    agent = build_agent(config, _connect(config))
    agent.synchronizer.disable(args.bundle_id)
    print(f"{app_display_name(args.bundle_id)}: disabled")


def cmd_enable(args: argparse.Namespace) -> None:
    config = _load(args)
    agent = build_agent(config, _connect(config))
    agent.synchronizer.enable(args.bundle_id)
    print(f"{app_display_name(args.bundle_id)}: enabled")


def cmd_remove(args: argparse.Namespace) -> None:
    config = _load(args)
    agent = build_agent(config, _connect(config))
    if agent.synchronizer.remove(args.bundle_id):
        print(f"{app_display_name(args.bundle_id)}: no longer monitored")
    else:
        print(f"{app_display_name(args.bundle_id)} was not monitored")


def cmd_bedtime(args: argparse.Namespace) -> None:
    config = _load(args)
    agent = build_agent(config, _connect(config))
    settings = agent.synchronizer.set_bedtime(
        BedtimeSettings(
            is_enabled=not args.off,
            start_time=args.start,
            end_time=args.end,
            enabled_days=args.days,
        )
    )
    state = "on" if settings.is_enabled else "off"
    print(f"Bedtime {state}: {settings.start_time}-{settings.end_time}")


def cmd_status(args: argparse.Namespace) -> None:
    """Show the cached restrictions this device enforces."""
    config = _load(args)
    cache = LocalCache(config.cache_dir)
    restrictions = cache.load_restrictions()
    if not restrictions:
        print("No monitored apps")
    for restriction in sorted(restrictions.values(), key=lambda r: r.bundle_id):
        name = app_display_name(restriction.bundle_id)
        if restriction.time_limit > 0:
            usage = (
                f"{format_duration(restriction.daily_usage)} of "
                f"{format_duration(restriction.time_limit)} "
                f"({restriction.usage_percentage:.0%})"
            )
        else:
            usage = f"{format_duration(restriction.daily_usage)}, no limit"
        flag = " [disabled]" if restriction.is_disabled else ""
        print(f"{name}: {usage}{flag}")
    if cache.load_bedtime_enforcement() is not None:
        print("Bedtime is on")


def cmd_monitor(args: argparse.Namespace) -> None:
    config = _load(args)
    agent = build_agent(config, _connect(config))
    agent.detector.add_to_monitoring(args.bundle_id, agent.synchronizer)
    print(f"{app_display_name(args.bundle_id)}: monitored")


def cmd_ignore(args: argparse.Namespace) -> None:
    config = _load(args)
    agent = build_agent(config, _connect(config))
    agent.detector.ignore(args.bundle_id)
    print(f"{app_display_name(args.bundle_id)}: ignored")


def cmd_restore(args: argparse.Namespace) -> None:
    config = _load(args)
    agent = build_agent(config, _connect(config))
    agent.deletions.restore_to_monitoring(args.bundle_id, agent.synchronizer)
    print(f"{app_display_name(args.bundle_id)}: restored to monitoring")


def cmd_forget(args: argparse.Namespace) -> None:
    config = _load(args)
    agent = build_agent(config, _connect(config))
    agent.deletions.remove_from_monitoring(args.bundle_id, agent.synchronizer)
    print(f"{app_display_name(args.bundle_id)}: removed from monitoring")


def _bundle_command(
    subparsers: argparse._SubParsersAction, name: str, help_text: str, func: object
) -> argparse.ArgumentParser:
    sub = subparsers.add_parser(name, help=help_text)
    sub.add_argument("bundle_id", help="App bundle id, e.g. com.zhiliaoapp.musically")
    sub.set_defaults(func=func)
    return sub


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="WatchWise child device agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  watchwise-device run                                   Run the device agent
  watchwise-device request-code                          Get a code to pair with a parent
  watchwise-device limit com.zhiliaoapp.musically 60     Limit TikTok to 1 hour a day
  watchwise-device bedtime --start 21:00 --end 07:00     Set bedtime
""",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=Path("config.json"),
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

    run_parser = subparsers.add_parser("run", help="Run the device agent")
    run_parser.set_defaults(func=cmd_run)

    code_parser = subparsers.add_parser("request-code", help="Request a pairing code")
    code_parser.set_defaults(func=cmd_request_code)

    limit_parser = _bundle_command(subparsers, "limit", "Set an app's daily limit", cmd_limit)
    limit_parser.add_argument("minutes", type=int, help="Daily limit in minutes (0 clears)")

    _bundle_command(subparsers, "disable", "Disable an app", cmd_disable)
    _bundle_command(subparsers, "enable", "Re-enable an app", cmd_enable)
    _bundle_command(subparsers, "remove", "Stop monitoring an app", cmd_remove)
    _bundle_command(subparsers, "monitor", "Monitor a newly detected app", cmd_monitor)
    _bundle_command(subparsers, "ignore", "Ignore a newly detected app", cmd_ignore)
    _bundle_command(subparsers, "restore", "Keep monitoring a deleted app", cmd_restore)
    _bundle_command(subparsers, "forget", "Stop monitoring a deleted app", cmd_forget)

    bedtime_parser = subparsers.add_parser("bedtime", help="Set bedtime")
    bedtime_parser.add_argument("--start", default="21:00", help="Start time, HH:MM")
    bedtime_parser.add_argument("--end", default="07:00", help="End time, HH:MM")
    bedtime_parser.add_argument(
        "--days",
        type=int,
        nargs="+",
        default=[1, 2, 3, 4, 5, 6, 7],
        help="Enabled days, 1 = Monday through 7 = Sunday",
    )
    bedtime_parser.add_argument("--off", action="store_true", help="Turn bedtime off")
    bedtime_parser.set_defaults(func=cmd_bedtime)

    status_parser = subparsers.add_parser("status", help="Show cached restrictions")
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()
    try:
        args.func(args)
    except WatchWiseError as e:
        logger.debug("Command failed: %s", e)
        print(e.user_message, file=sys.stderr)
        sys.exit(1)
    except ValidationError as e:
        print(f"Invalid settings: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
