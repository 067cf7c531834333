"""Configuration loader for Sightline."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict
import os
import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "sightline" / "config.yaml"

DISPATCH_MODES = ("direct", "inngest", "both")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(user_path: Path | None = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if DEFAULT_CONFIG_PATH.exists():
        data = yaml.safe_load(DEFAULT_CONFIG_PATH.read_text()) or {}
    user_path = user_path or USER_CONFIG_PATH
    if user_path.exists():
        override = yaml.safe_load(user_path.read_text()) or {}
        data = _deep_merge(data, override)

    # Environment overrides - Server
    host = os.getenv("SIGHTLINE_HOST")
    port = os.getenv("SIGHTLINE_PORT")
    if host:
        data.setdefault("server", {})["host"] = host
    if port:
        try:
            data.setdefault("server", {})["port"] = int(port)
        except ValueError:
            pass

    # Environment overrides - Data directory
    data_dir = os.getenv("SIGHTLINE_DATA_DIR")
    if data_dir:
        data["data_dir"] = data_dir

    # Environment overrides - Dispatch
    mode = os.getenv("SIGHTLINE_DISPATCH_MODE")
    if mode and mode in DISPATCH_MODES:
        data.setdefault("dispatch", {})["mode"] = mode
    bus_url = os.getenv("SIGHTLINE_EVENT_BUS_URL")
    if bus_url:
        data.setdefault("dispatch", {})["event_bus_url"] = bus_url
    event_key = os.getenv("SIGHTLINE_EVENT_KEY")
    if event_key:
        data.setdefault("dispatch", {})["event_key"] = event_key
    webhook_secret = os.getenv("SIGHTLINE_WEBHOOK_SECRET")
    if webhook_secret:
        data.setdefault("dispatch", {})["webhook_secret"] = webhook_secret

    # Environment overrides - Logging
    log_level = os.getenv("SIGHTLINE_LOG_LEVEL")
    if log_level:
        data.setdefault("logging", {})["level"] = log_level.upper()

    return data


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def server(self) -> Dict[str, Any]:
        return self.raw.get("server", {})

    @property
    def data_dir(self) -> Path:
        default = str(Path.home() / ".sightline")
        return Path(self.raw.get("data_dir", default)).expanduser()

    @property
    def dispatch(self) -> Dict[str, Any]:
        return self.raw.get("dispatch", {})

    @property
    def dispatch_mode(self) -> str:
        """Default dispatch mode for submissions that do not name one."""
        mode = str(self.dispatch.get("mode", "inngest"))
        return mode if mode in DISPATCH_MODES else "inngest"

    @property
    def timeouts(self) -> Dict[str, Any]:
        return self.raw.get("timeouts", {})

    @property
    def optimizer(self) -> Dict[str, Any]:
        return self.raw.get("optimizer", {})

    @property
    def stages(self) -> Dict[str, Any]:
        return self.raw.get("stages", {})

    @property
    def providers(self) -> Dict[str, Any]:
        return self.raw.get("providers", {})

    @property
    def limits(self) -> Dict[str, Any]:
        return self.raw.get("limits", {})

    @property
    def logging(self) -> Dict[str, Any]:
        return self.raw.get("logging", {})

    @property
    def log_level(self) -> str:
        return str(self.logging.get("level", "INFO")).upper()


def get_config() -> Config:
    return Config(load_config())
