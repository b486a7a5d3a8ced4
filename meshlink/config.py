"""Configuration management for meshlink.

Loads configuration from:
1. .env file (deployment-specific values)
2. config.yaml (transport, watchdog and reconnection tuning)
3. Environment variables (override both)
"""

import os
from pathlib import Path
from typing import Optional
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env file if it exists
env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def env_str(key: str, default: str = "") -> str:
    """Get string from environment."""
    return os.getenv(key, default)


def env_int(key: str, default: int = 0) -> int:
    """Get int from environment."""
    val = os.getenv(key)
    return int(val) if val else default


def env_float(key: str, default: float = 0.0) -> float:
    """Get float from environment."""
    val = os.getenv(key)
    return float(val) if val else default


def env_bool(key: str, default: bool = False) -> bool:
    """Get bool from environment."""
    val = os.getenv(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


class MeshConfig(BaseModel):
    transport: str = env_str("MESH_TRANSPORT", "serial")  # ble, serial or tcp
    address: Optional[str] = env_str("MESH_ADDRESS") or None
    tcp_port: int = env_int("MESH_TCP_PORT", 4403)
    auto_connect: bool = env_bool("MESH_AUTO_CONNECT", False)
    handshake_timeout: float = env_float("MESH_HANDSHAKE_TIMEOUT", 60.0)
    ack_timeout: float = env_float("MESH_ACK_TIMEOUT", 60.0)
    # Broadcast position request period while configured; 0 disables it
    refresh_interval: float = env_float("MESH_REFRESH_INTERVAL", 0.0)


class LivenessThresholds(BaseModel):
    stale: float
    dead: float


class WatchdogConfig(BaseModel):
    poll_interval: float = env_float("WATCHDOG_POLL_INTERVAL", 15.0)
    probe_interval: float = env_float("WATCHDOG_PROBE_INTERVAL", 30.0)
    thresholds: dict[str, LivenessThresholds] = {
        "ble": LivenessThresholds(stale=90, dead=180),
        "serial": LivenessThresholds(stale=120, dead=300),
        "tcp": LivenessThresholds(stale=60, dead=120),
    }


class ReconnectConfig(BaseModel):
    max_attempts: int = env_int("RECONNECT_MAX_ATTEMPTS", 5)
    base_delay: float = env_float("RECONNECT_BASE_DELAY", 2.0)
    max_delay: float = env_float("RECONNECT_MAX_DELAY", 32.0)
    # Transport kinds that are reconnected automatically
    transports: list[str] = ["ble", "serial", "tcp"]


class DatabaseConfig(BaseModel):
    path: str = env_str("DATABASE_PATH", "data/meshlink.db")
    history_limit: int = env_int("DATABASE_HISTORY_LIMIT", 500)


class WebConfig(BaseModel):
    host: str = env_str("WEB_HOST", "127.0.0.1")
    port: int = env_int("WEB_PORT", 8000)


class AppConfig(BaseModel):
    mesh: MeshConfig = MeshConfig()
    watchdog: WatchdogConfig = WatchdogConfig()
    reconnect: ReconnectConfig = ReconnectConfig()
    database: DatabaseConfig = DatabaseConfig()
    web: WebConfig = WebConfig()


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Load configuration from YAML file, with env var overrides."""
    if config_path is None:
        # Look for config in common locations
        search_paths = [
            Path("config.yaml"),
            Path("config.yml"),
            Path(__file__).parent.parent / "config.yaml",
        ]
        for path in search_paths:
            if path.exists():
                config_path = str(path)
                break

    if config_path and Path(config_path).exists():
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}

        # Parse nested configs, merging with env defaults
        config_data = {}

        if "mesh" in data:
            mesh_data = {**MeshConfig().model_dump(), **data["mesh"]}
            config_data["mesh"] = MeshConfig(**mesh_data)

        if "watchdog" in data:
            defaults = WatchdogConfig()
            thresholds = {k: v.model_dump() for k, v in defaults.thresholds.items()}
            for kind, values in (data["watchdog"].get("thresholds") or {}).items():
                thresholds[kind] = {**thresholds.get(kind, {}), **values}
            watchdog_data = {
                **defaults.model_dump(),
                **data["watchdog"],
                "thresholds": thresholds,
            }
            config_data["watchdog"] = WatchdogConfig(**watchdog_data)

        if "reconnect" in data:
            reconnect_data = {**ReconnectConfig().model_dump(), **data["reconnect"]}
            config_data["reconnect"] = ReconnectConfig(**reconnect_data)

        if "database" in data:
            database_data = {**DatabaseConfig().model_dump(), **data["database"]}
            config_data["database"] = DatabaseConfig(**database_data)

        if "web" in data:
            web_data = {**WebConfig().model_dump(), **data["web"]}
            config_data["web"] = WebConfig(**web_data)

        return AppConfig(**config_data)

    # No config file, use env defaults
    return AppConfig()


# Global config instance
config = load_config()
