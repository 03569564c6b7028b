"""Scheduled tasks of the child device agent."""

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from watchwise_shared import ActivityType
from watchwise_shared.errors import WatchWiseError
from watchwise_shared.scheduler import Scheduler

from .config import DeviceConfig
from .deleted_apps import DeletedAppDetector, load_installed_apps
from .heartbeat import HeartbeatSender
from .new_apps import NewAppDetector
from .restrictions import RestrictionSynchronizer
from .usage import UsageSpool

logger = logging.getLogger(__name__)


@dataclass
class DeviceAgent:
    """The services one device process runs."""

    synchronizer: RestrictionSynchronizer
    detector: NewAppDetector
    heartbeat: HeartbeatSender
    spool: UsageSpool
    deletions: DeletedAppDetector


def process_usage(agent: DeviceAgent) -> int:
    """Apply spooled usage to restrictions and look for new apps.

    Returns the number of samples processed.
    """
    samples = agent.spool.drain()
    if not samples:
        return 0

    for sample in samples:
        try:
            agent.synchronizer.record_usage(sample.bundle_id, sample.duration)
        except WatchWiseError:
            logger.exception("Failed to record usage for %s", sample.bundle_id)

    try:
        agent.detector.check_for_new_apps(samples)
    except WatchWiseError:
        logger.exception("Failed to check for new apps")
    return len(samples)


def check_deleted_apps(agent: DeviceAgent, installed_apps_path: Path) -> int:
    """Compare the installed-app inventory with the known apps.

    Returns the number of newly recorded deletions.
    """
    installed = load_installed_apps(installed_apps_path)
    if installed is None:
        logger.debug("No installed-app inventory at %s", installed_apps_path)
        return 0
    try:
        return len(agent.deletions.check_for_deleted_apps(installed))
    except WatchWiseError:
        logger.exception("Failed to check for deleted apps")
        return 0


def start_device_tasks(scheduler: Scheduler, agent: DeviceAgent, config: DeviceConfig) -> None:
    """Register the device's periodic tasks on ``scheduler``."""
    scheduler.every(
        "heartbeat",
        config.heartbeat_interval_seconds,
        agent.heartbeat.heartbeat,
        run_immediately=True,
    )
    scheduler.every(
        "restriction-refresh",
        config.restriction_refresh_seconds,
        agent.synchronizer.refresh,
        run_immediately=True,
    )
    scheduler.every(
        "bedtime",
        config.bedtime_check_interval_seconds,
        agent.synchronizer.evaluate_bedtime,
    )
    scheduler.every(
        "usage",
        config.new_app_check_interval_seconds,
        lambda: process_usage(agent),
    )
    installed_apps_path = config.installed_apps_path
    if installed_apps_path is not None:
        scheduler.every(
            "deleted-apps",
            config.deleted_app_check_interval_seconds,
            lambda: check_deleted_apps(agent, installed_apps_path),
        )


def run_device_loop(agent: DeviceAgent, config: DeviceConfig) -> None:
    """Run the device agent. Does not return unless interrupted."""
    scheduler = Scheduler()
    agent.heartbeat.send(ActivityType.MONITORING_STARTED)
    agent.synchronizer.evaluate_bedtime()
    start_device_tasks(scheduler, agent, config)

    logger.info(
        "Device agent running (heartbeat=%ds, bedtime check=%ds, refresh=%ds)",
        config.heartbeat_interval_seconds,
        config.bedtime_check_interval_seconds,
        config.restriction_refresh_seconds,
    )

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Device agent interrupted")
    finally:
        scheduler.shutdown(wait=True)
        agent.heartbeat.send(ActivityType.APP_SHUTDOWN)
        process_usage(agent)
