"""
Centralized configuration loading for ftpbridge.

Settings come from a YAML file resolved the same way by every entry point;
a missing file means defaults.
"""

import os
import yaml
import logging
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = 'FTPBRIDGE_CONFIG_PATH'
DEFAULT_LOG_BASE = '~/.ftpbridge/logs'


class ConfigLoader:
    """Configuration loader with consistent path resolution."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = self._resolve_config_path(config_path)

    def _resolve_config_path(self, config_path: Optional[str]) -> str:
        """
        Resolve the configuration file path.

        Priority order:
        1. Provided config_path parameter
        2. FTPBRIDGE_CONFIG_PATH environment variable
        3. config.yaml in current working directory
        4. config.yaml relative to the repository root
        """
        if config_path:
            return config_path

        env_path = os.environ.get(CONFIG_ENV_VAR)
        if env_path and os.path.exists(env_path):
            return env_path

        cwd_path = os.path.join(os.getcwd(), 'config.yaml')
        if os.path.exists(cwd_path):
            return cwd_path

        # Repository root is two levels up from this file
        repo_config = Path(__file__).parent.parent.parent / 'config.yaml'
        if repo_config.exists():
            return str(repo_config)

        return 'config.yaml'

    def load_config(self) -> Dict[str, Any]:
        """
        Load the YAML configuration file.

        Raises:
            FileNotFoundError: If the configuration file cannot be found
            yaml.YAMLError: If the configuration file is invalid YAML
        """
        try:
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f)
                logger.info(f"Loaded configuration from: {self.config_path}")
                return config or {}
        except FileNotFoundError:
            logger.debug(f"Configuration file not found: {self.config_path}")
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in configuration file {self.config_path}: {e}")
            raise


def _optional_number(data: Dict[str, Any], key: str, default, positive: bool = True):
    value = data.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {value!r}")
    if positive and value <= 0:
        raise ValueError(f"{key} must be > 0, got {value}")
    return value


def _limit(value, name: str) -> Optional[int]:
    if value is None or value == 0:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"global_limits.{name} must be a non-negative integer (bytes/sec), got {value!r}")
    return value


@dataclass
class EngineSettings:
    """Engine tunables. Every field has a default, so an empty config is valid."""

    max_concurrent: int = 3
    connect_timeout: float = 30.0
    stall_timeout: Optional[float] = 30.0
    transfer_timeout: Optional[float] = None
    global_upload_limit: Optional[int] = None
    global_download_limit: Optional[int] = None
    log_base: str = os.path.expanduser(DEFAULT_LOG_BASE)
    activity_log_max_entries: int = 1000

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineSettings":
        """
        Build settings from parsed YAML.

        Raises:
            ValueError: If a value has the wrong type or range
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ValueError("Configuration root must be a mapping")
        max_concurrent = data.get('max_concurrent', 3)
        if isinstance(max_concurrent, bool) or not isinstance(max_concurrent, int) or max_concurrent < 1:
            raise ValueError(f"max_concurrent must be an integer >= 1, got {max_concurrent!r}")

        max_entries = data.get('activity_log_max_entries', 1000)
        if isinstance(max_entries, bool) or not isinstance(max_entries, int) or max_entries < 1:
            raise ValueError(f"activity_log_max_entries must be an integer >= 1, got {max_entries!r}")

        limits = data.get('global_limits') or {}
        if not isinstance(limits, dict):
            raise ValueError("global_limits must be a mapping with 'upload' and 'download' keys")

        connect_timeout = _optional_number(data, 'connect_timeout', 30.0)
        if connect_timeout is None:
            raise ValueError("connect_timeout cannot be null")

        return cls(
            max_concurrent=max_concurrent,
            connect_timeout=float(connect_timeout),
            stall_timeout=_optional_number(data, 'stall_timeout', 30.0),
            transfer_timeout=_optional_number(data, 'transfer_timeout', None),
            global_upload_limit=_limit(limits.get('upload'), 'upload'),
            global_download_limit=_limit(limits.get('download'), 'download'),
            log_base=os.path.expanduser(str(data.get('log_base') or DEFAULT_LOG_BASE)),
            activity_log_max_entries=max_entries,
        )

    def to_dict(self) -> dict:
        return asdict(self)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load raw configuration using a fresh loader (picks up environment changes)."""
    return ConfigLoader(config_path=config_path).load_config()


def load_settings(config_path: Optional[str] = None) -> EngineSettings:
    """
    Load EngineSettings, falling back to defaults when no config file exists.

    Raises:
        ValueError: If the configuration holds invalid values
    """
    try:
        data = load_config(config_path)
    except FileNotFoundError:
        logger.info("No configuration file found, using defaults")
        data = {}
    return EngineSettings.from_dict(data)
