"""Configuration for the backend functions."""

from datetime import timedelta
from pathlib import Path

from pydantic import BaseModel


class SweepSettings(BaseModel):
    """Schedules and thresholds of the reconciliation sweeps."""

    code_ttl_minutes: int = 10
    code_sweep_minutes: int = 10
    stale_purge_minutes: int = 60
    stale_request_hours: int = 24
    inactivity_sweep_hours: int = 6
    inactivity_days: int = 3
    heartbeat_sweep_minutes: int = 20
    heartbeat_interval_minutes: int = 15
    missed_heartbeat_grace_minutes: int = 20

    @property
    def code_ttl(self) -> timedelta:
        return timedelta(minutes=self.code_ttl_minutes)

    @property
    def stale_request_age(self) -> timedelta:
        return timedelta(hours=self.stale_request_hours)

    @property
    def inactivity_threshold(self) -> timedelta:
        return timedelta(days=self.inactivity_days)

    @property
    def heartbeat_interval(self) -> timedelta:
        return timedelta(minutes=self.heartbeat_interval_minutes)

    @property
    def missed_heartbeat_grace(self) -> timedelta:
        return timedelta(minutes=self.missed_heartbeat_grace_minutes)


class FunctionsConfig(BaseModel):
    """Backend configuration."""

    firebase_credentials_path: Path | None = None
    use_memory_store: bool = False
    sweeps: SweepSettings = SweepSettings()


def load_config(path: Path) -> FunctionsConfig:
    """Load configuration from a JSON file."""
    return FunctionsConfig.model_validate_json(path.read_text())
