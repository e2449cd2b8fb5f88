"""
Configuration management and loading.

Reads the monitor settings from a YAML file. Every section is optional;
a missing file yields the defaults (one Claude and one Codex account with
their standard log locations).
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ai_usage_monitor.core.pricing_resolver import DEFAULT_PRICING_URL
from ai_usage_monitor.scanners import SCANNERS
from ai_usage_monitor.storage.models import Account, AccountKind

APP_NAME = "ai-usage-monitor"
CONFIG_FILENAME = "config.yaml"


def default_config_path() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(config_home) if config_home else Path.home() / ".config"
    return base / APP_NAME / CONFIG_FILENAME


def default_cache_path() -> Path:
    cache_home = os.environ.get("XDG_CACHE_HOME")
    base = Path(cache_home) if cache_home else Path.home() / ".cache"
    return base / APP_NAME / "pricing.json"


@dataclass(frozen=True)
class NotificationConfig:
    """Usage threshold notifications."""
    enabled: bool = True
    threshold: float = 0.9

    def __post_init__(self):
        """Validate threshold is a fraction."""
        if not 0.0 < self.threshold <= 1.0:
            raise ValueError("notifications.threshold must be > 0 and <= 1")


@dataclass(frozen=True)
class PollingConfig:
    """Intervals and timeouts, in seconds unless noted."""
    fetch_interval: float = 60.0
    scan_interval: float = 60.0
    refresh_cooldown: float = 5.0
    request_timeout: float = 30.0
    pricing_refresh_hours: float = 24.0

    def __post_init__(self):
        """Validate intervals are positive."""
        for name in ("fetch_interval", "scan_interval", "request_timeout", "pricing_refresh_hours"):
            if getattr(self, name) <= 0:
                raise ValueError(f"polling.{name} must be > 0")
        if self.refresh_cooldown < 0:
            raise ValueError("polling.refresh_cooldown must be >= 0")


@dataclass(frozen=True)
class PricingConfig:
    url: str = DEFAULT_PRICING_URL
    cache_path: Path = field(default_factory=default_cache_path)


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Optional[Path] = None

    def __post_init__(self):
        if logging.getLevelName(self.level) == f"Level {self.level}":
            raise ValueError(f"logging.level must be a logging level name, got {self.level!r}")


@dataclass(frozen=True)
class MonitorConfig:
    """Complete monitor configuration."""
    accounts: Tuple[Account, ...]
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        """Validate account names are unique."""
        names = [account.name for account in self.accounts]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate account names: {duplicates}")

    def get_account(self, name: str) -> Account:
        for account in self.accounts:
            if account.name == name:
                return account
        raise KeyError(f"Unknown account: {name}")

    @property
    def enabled_accounts(self) -> List[Account]:
        return [account for account in self.accounts if account.enabled]


def default_accounts() -> Tuple[Account, ...]:
    return tuple(
        Account(name=kind.value, kind=kind, log_roots=tuple(SCANNERS[kind].default_roots()))
        for kind in AccountKind
    )


def load_config(path: Optional[str] = None) -> MonitorConfig:
    """Load and validate the monitor configuration from a YAML file.

    Args:
        path: Path to the YAML file (defaults to the XDG config location)

    Returns:
        Validated MonitorConfig; defaults when the default file does not exist

    Raises:
        FileNotFoundError: If an explicitly given config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path).expanduser() if path else default_config_path()
    if not config_path.exists():
        if path:
            raise FileNotFoundError(f"Config file not found: {path}")
        return MonitorConfig(accounts=default_accounts())

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    if raw_config is None:
        return MonitorConfig(accounts=default_accounts())
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    allowed_top_keys = {'accounts', 'notifications', 'polling', 'pricing', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'accounts' in raw_config:
        accounts_data = raw_config['accounts']
        if not isinstance(accounts_data, list):
            raise ValueError("'accounts' must be a list")
        accounts = tuple(
            _parse_account(item, f"accounts[{index}]") for index, item in enumerate(accounts_data)
        )
    else:
        accounts = default_accounts()

    notifications_data = _section(raw_config, 'notifications', {'enabled', 'threshold'})
    notifications = NotificationConfig(
        enabled=_bool(notifications_data, 'enabled', True, 'notifications'),
        threshold=_number(notifications_data, 'threshold', 0.9, 'notifications'),
    )

    polling_keys = {'fetch_interval', 'scan_interval', 'refresh_cooldown', 'request_timeout', 'pricing_refresh_hours'}
    polling_data = _section(raw_config, 'polling', polling_keys)
    defaults = PollingConfig()
    polling = PollingConfig(**{
        key: _number(polling_data, key, getattr(defaults, key), 'polling') for key in polling_keys
    })

    pricing_data = _section(raw_config, 'pricing', {'url', 'cache_path'})
    url = pricing_data.get('url', DEFAULT_PRICING_URL)
    if not isinstance(url, str) or not url.startswith(('http://', 'https://')):
        raise ValueError("'url' in pricing must be an http(s) URL")
    cache_path = pricing_data.get('cache_path')
    pricing = PricingConfig(
        url=url,
        cache_path=_path(cache_path, 'pricing.cache_path') if cache_path is not None else default_cache_path(),
    )

    logging_data = _section(raw_config, 'logging', {'level', 'file'})
    level = logging_data.get('level', 'INFO')
    if not isinstance(level, str):
        raise ValueError("'level' in logging must be a string")
    log_file = logging_data.get('file')
    logging_config = LoggingConfig(
        level=level.upper(),
        file=_path(log_file, 'logging.file') if log_file is not None else None,
    )

    return MonitorConfig(
        accounts=accounts,
        notifications=notifications,
        polling=polling,
        pricing=pricing,
        logging=logging_config,
    )


def _parse_account(data: Any, path: str) -> Account:
    """Parse and validate one account entry.

    Raises:
        ValueError: If the entry is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = {'name', 'kind', 'enabled', 'log_roots'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'kind' not in data:
        raise ValueError(f"Missing required 'kind' in {path}")
    kind_str = data['kind']
    if not isinstance(kind_str, str):
        raise ValueError(f"'kind' in {path} must be a string")
    try:
        kind = AccountKind(kind_str.lower())
    except ValueError:
        valid_kinds = [kind.value for kind in AccountKind]
        raise ValueError(f"'kind' in {path} must be one of: {valid_kinds}")

    name = data.get('name', kind.value)
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"'name' in {path} must be a non-empty string")

    if 'log_roots' in data:
        roots_data = data['log_roots']
        if not isinstance(roots_data, list) or not roots_data:
            raise ValueError(f"'log_roots' in {path} must be a non-empty list")
        log_roots = tuple(_path(root, f"{path}.log_roots") for root in roots_data)
    else:
        log_roots = tuple(SCANNERS[kind].default_roots())

    return Account(
        name=name.strip(),
        kind=kind,
        log_roots=log_roots,
        enabled=_bool(data, 'enabled', True, path),
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _number(data: Dict, key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _bool(data: Dict, key: str, default: bool, path: str) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValueError(f"'{key}' in {path} must be true or false")
    return value


def _path(value: Any, path: str) -> Path:
    if not isinstance(value, str) or not value:
        raise ValueError(f"'{path}' must be a non-empty path string")
    return Path(os.path.expandvars(value)).expanduser()
