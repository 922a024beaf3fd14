import copy
import json
import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import yaml


def _get_nested_value(config: Dict[str, Any], path: str) -> Any:
    """Get a nested value from a dictionary using dot notation."""
    value = config
    for key in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
        if value is None:
            return None
    return value


def _set_nested_value(config: Dict[str, Any], path: str, value: Any) -> None:
    """Set a nested value in a dictionary using dot notation, creating parents as needed."""
    *parents, final_key = path.split(".")
    current = config
    for part in parents:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[final_key] = value


def _merge(config: Dict[str, Any], loaded: Dict[str, Any]) -> None:
    """Merge a loaded file into the config, updating nested sections instead of replacing them"""
    for key, value in loaded.items():
        if isinstance(value, dict) and isinstance(config.get(key), dict):
            config[key].update(value)
        else:
            config[key] = value


def _convert_value(value: str, value_type: Optional[str]) -> Any:
    """Convert an environment string to the mapped type."""
    if value_type == "bool":
        return value.strip().lower() in ("true", "1", "yes", "on")
    if value_type == "int":
        return int(value)
    if value_type == "list":
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def load_config(config_path: str) -> Dict[str, Any]:
    """Load configuration from file and environment"""
    logger = logging.getLogger("Config")

    config = copy.deepcopy(DEFAULT_CONFIG)

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            content = f.read()
        try:
            loaded = yaml.safe_load(content)
        except yaml.YAMLError:
            try:
                loaded = json.loads(content)
            except json.JSONDecodeError as e:
                raise ValueError(f"Failed to parse config file as YAML or JSON: {e}")
        if loaded:
            if not isinstance(loaded, dict):
                raise ValueError(f"Config file {config_path} must contain a mapping")
            _merge(config, loaded)

    for path, env_info in ENV_MAPPINGS.items():
        env_var = env_info if isinstance(env_info, str) else env_info["env"]
        env_type = env_info.get("type") if isinstance(env_info, dict) else None

        value = os.environ.get(env_var)
        logger.debug(f"Checking {env_var}: {'present' if value else 'missing'}")
        if value is None:
            continue

        try:
            _set_nested_value(config, path, _convert_value(value, env_type))
        except ValueError:
            logger.warning(f"Failed to convert {env_var} value to {env_type}: {value}")

    return config


class Config:
    """Configuration singleton"""

    _instance = None
    _config = None
    _test_mode = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(Config, cls).__new__(cls)
            cls._instance.initialize()
        return cls._instance

    def initialize(self):
        """Initialize the configuration"""
        if Config._config is None:
            self.load_config()

    def load_config(self):
        """Load configuration from file and environment"""
        config_path = os.environ.get("COMMITWATCH_CONFIG", "config.yml")
        Config._config = load_config(config_path)

    @classmethod
    def set_test_mode(cls, enabled: bool = True):
        """Enable/disable test mode"""
        cls._test_mode = enabled
        cls._config = None
        cls._instance = None

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value"""
        if not Config._config:
            return default
        value = _get_nested_value(Config._config, key)
        return value if value is not None else default

    @property
    def environment(self) -> str:
        return str(self.get("environment", "development")).lower()

    @property
    def data_dir(self) -> str:
        return os.path.expanduser(self.get("data_dir", "./data"))

    @property
    def database_url(self) -> Optional[str]:
        """Get database URL from the environment, the config file, or the sqlite default."""
        db_url = os.environ.get("DATABASE_URL") or self.get("database.url")
        if db_url:
            return db_url

        db = self.get("database", {})
        if db.get("type", "sqlite") == "sqlite":
            os.makedirs(self.data_dir, exist_ok=True)
            return f"sqlite:///{os.path.join(self.data_dir, db.get('name', 'commitwatch.db'))}"

        if all(key in db for key in ["host", "port", "name", "user", "password"]):
            return f"postgresql://{db['user']}:{db['password']}@{db['host']}:{db['port']}/{db['name']}"

        return None

    @property
    def database_dialect(self) -> Optional[str]:
        url = self.database_url
        return urlparse(url).scheme.split("+")[0] if url else None

    @property
    def github_token(self) -> Optional[str]:
        return self.get("github.api_token")

    @property
    def telegram_bot_token(self) -> Optional[str]:
        return self.get("telegram.bot_token")

    @property
    def telegram_chat_id(self) -> Optional[str]:
        chat_id = self.get("telegram.chat_id")
        return str(chat_id) if chat_id is not None else None

    @property
    def scheduler_enabled(self) -> bool:
        """An explicit scheduler.enabled wins; otherwise only production runs the scheduler."""
        enabled = self.get("scheduler.enabled")
        if enabled is not None:
            return bool(enabled)
        return self.environment == "production"


# Environment variable mappings
ENV_MAPPINGS = {
    "environment": "COMMITWATCH_ENV",
    "data_dir": "COMMITWATCH_DATA_DIR",
    "database.url": "DATABASE_URL",
    "github.api_token": "GITHUB_TOKEN",
    "github.max_commits_per_fetch": {"env": "COMMITWATCH_MAX_COMMITS", "type": "int"},
    "telegram.bot_token": "TELEGRAM_BOT_TOKEN",
    "telegram.chat_id": "TELEGRAM_CHAT_ID",
    "telegram.commits_per_message": {"env": "COMMITWATCH_COMMITS_PER_MESSAGE", "type": "int"},
    "scheduler.enabled": {"env": "SCHEDULER_ENABLED", "type": "bool"},
    "scheduler.polling_interval_ms": {"env": "SCHEDULER_POLLING_INTERVAL_MS", "type": "int"},
    "scheduler.max_retries": {"env": "SCHEDULER_MAX_RETRIES", "type": "int"},
    "scheduler.retry_delay_ms": {"env": "SCHEDULER_RETRY_DELAY_MS", "type": "int"},
    "scheduler.retry_max_delay_ms": {"env": "SCHEDULER_RETRY_MAX_DELAY_MS", "type": "int"},
    "scheduler.shutdown_timeout_ms": {"env": "SCHEDULER_SHUTDOWN_TIMEOUT_MS", "type": "int"},
    "ledger.retention_days": {"env": "COMMITWATCH_RETENTION_DAYS", "type": "int"},
}

# Default configuration
DEFAULT_CONFIG = {
    "environment": "development",
    "data_dir": "~/.commitwatch/data",
    "database": {
        "type": "sqlite",
        "name": "commitwatch.db",
    },
    "github": {
        "api_token": None,
        "max_commits_per_fetch": 100,
    },
    "telegram": {
        "bot_token": None,
        "chat_id": None,
        "commits_per_message": 5,
    },
    "scheduler": {
        "enabled": None,
        "polling_interval_ms": 300000,
        "max_retries": 3,
        "retry_delay_ms": 1000,
        "retry_max_delay_ms": 30000,
        "shutdown_timeout_ms": 30000,
        "lock_name": "notification_scheduler",
        "lock_ttl_seconds": 1800,
    },
    "ledger": {"retention_days": 30},
}
