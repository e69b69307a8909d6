"""
Configuration management for the sync tool

Settings come from a YAML file with a ``global`` section and a ``users``
list. Secrets may be kept out of the file: ``${VAR}`` references are expanded
from the environment, which is populated from secrets.env and .env.
"""

import copy
import logging
import os
import re
from typing import Any, Dict, List

import pytz
import yaml
from croniter import croniter
from dotenv import load_dotenv

DEFAULTS: Dict[str, Any] = {
    "min_progress_threshold": 5.0,
    "parallel": True,
    "workers": 3,
    "timezone": "UTC",
    "dry_run": False,
    "sync_schedule": "0 3 * * *",
    "force_sync": False,
    "auto_add_books": False,
    "cross_format_sync": False,
    "prevent_progress_regression": True,
    "cache_file": "data/.book_cache.db",
    "hardcover_rate_limit": 55,
    "hardcover_max_concurrent": 3,
    "reread_detection": {
        "reread_threshold": 30,
        "high_progress_threshold": 85,
        "regression_block_threshold": 50,
        "regression_warn_threshold": 15,
    },
    "delayed_updates": {
        "enabled": False,
        "session_timeout": 900,
        "max_delay": 3600,
        "immediate_completion": True,
        "significant_change_threshold": 5.0,
    },
    "title_author_matching": {
        "enabled": True,
        "confidence_threshold": 0.70,
        "max_search_results": 5,
    },
}

REQUIRED_USER_FIELDS = ["id", "abs_url", "abs_token", "hardcover_token"]

_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_with_defaults(global_config: Dict[str, Any]) -> Dict[str, Any]:
    """Global settings with every missing key filled from DEFAULTS"""
    return _merge(DEFAULTS, global_config)


def expand_env(value: Any) -> Any:
    """Replace ${VAR} references with environment values (missing ones become empty)"""
    if not isinstance(value, str):
        return value
    return _ENV_REFERENCE.sub(lambda match: os.getenv(match.group(1), ""), value)


class Config:
    """Configuration class that loads settings from config/config.yaml (YAML)"""

    def __init__(self, config_path: str = "config/config.yaml") -> None:
        self.logger = logging.getLogger(__name__)
        self.config_path = config_path
        self._load_env()
        self._load_config()
        self._validate_config()

    def _load_env(self) -> None:
        # Load secrets from secrets.env file
        if os.path.exists("secrets.env"):
            load_dotenv("secrets.env")
            self.logger.debug("Loaded secrets from secrets.env")

        # Load additional settings from .env file
        if os.path.exists(".env"):
            load_dotenv(".env")
            self.logger.debug("Loaded additional configuration from .env")

    def _load_config(self) -> None:
        if not os.path.exists(self.config_path):
            raise FileNotFoundError(f"Config file not found: {self.config_path}")
        with open(self.config_path, "r") as f:
            config = yaml.safe_load(f) or {}

        self.global_config = merge_with_defaults(config.get("global") or {})
        self.users = [
            {key: expand_env(value) for key, value in user.items()}
            for user in config.get("users") or []
            if isinstance(user, dict)
        ]
        self.logger.info(f"Loaded configuration from {self.config_path}")

    def _validate_config(self) -> None:
        errors = self._validate_users() + self._validate_global()
        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors)
            self.logger.error(error_msg)
            raise ValueError(error_msg)
        self.logger.debug("Configuration validation passed")

    def _validate_users(self) -> List[str]:
        errors = []
        if not self.users:
            errors.append("No users defined in config")

        seen = set()
        for user in self.users:
            for key in REQUIRED_USER_FIELDS:
                if not user.get(key):
                    errors.append(f"Missing user config: {key} for user {user.get('id', '[unknown]')}")
            if user.get("id") in seen:
                errors.append(f"Duplicate user id: {user['id']}")
            seen.add(user.get("id"))
        return errors

    def _validate_global(self) -> List[str]:
        errors = []
        g = self.global_config

        threshold = g["min_progress_threshold"]
        if not isinstance(threshold, (int, float)) or not 0 <= threshold <= 100:
            errors.append(f"min_progress_threshold must be between 0 and 100 (got {threshold})")

        workers = g["workers"]
        if not isinstance(workers, int) or isinstance(workers, bool) or not 1 <= workers <= 10:
            errors.append(f"workers must be an integer between 1 and 10 (got {workers})")

        for key in ["parallel", "dry_run", "force_sync", "auto_add_books", "cross_format_sync", "prevent_progress_regression"]:
            if not isinstance(g[key], bool):
                errors.append(f"{key} must be true or false (got {g[key]})")

        if not croniter.is_valid(str(g["sync_schedule"])):
            errors.append(f"Invalid sync_schedule cron expression: {g['sync_schedule']}")

        if g["timezone"] not in pytz.all_timezones_set:
            errors.append(f"Unknown timezone: {g['timezone']}")

        if not isinstance(g["hardcover_rate_limit"], int) or not 10 <= g["hardcover_rate_limit"] <= 60:
            errors.append(f"hardcover_rate_limit must be between 10 and 60 requests per minute (got {g['hardcover_rate_limit']})")
        if not isinstance(g["hardcover_max_concurrent"], int) or not 1 <= g["hardcover_max_concurrent"] <= 10:
            errors.append(f"hardcover_max_concurrent must be between 1 and 10 (got {g['hardcover_max_concurrent']})")

        reread = g["reread_detection"]
        for key, value in reread.items():
            if not isinstance(value, (int, float)) or not 0 <= value <= 100:
                errors.append(f"reread_detection.{key} must be between 0 and 100 (got {value})")
        if reread["reread_threshold"] >= reread["high_progress_threshold"]:
            errors.append("reread_detection.reread_threshold must be lower than high_progress_threshold")

        delayed = g["delayed_updates"]
        if not 60 <= delayed["session_timeout"] <= 7200:
            errors.append(f"delayed_updates.session_timeout must be between 60 and 7200 seconds (got {delayed['session_timeout']})")
        if not 300 <= delayed["max_delay"] <= 86400:
            errors.append(f"delayed_updates.max_delay must be between 300 and 86400 seconds (got {delayed['max_delay']})")
        if delayed["session_timeout"] >= delayed["max_delay"]:
            errors.append("delayed_updates.session_timeout must be less than max_delay")
        if not 0 < delayed["significant_change_threshold"] <= 100:
            errors.append("delayed_updates.significant_change_threshold must be between 0 and 100")

        matching = g["title_author_matching"]
        if not 0 < matching["confidence_threshold"] <= 1:
            errors.append(f"title_author_matching.confidence_threshold must be between 0 and 1 (got {matching['confidence_threshold']})")
        if not 1 <= matching["max_search_results"] <= 20:
            errors.append("title_author_matching.max_search_results must be between 1 and 20")

        return errors

    def get_global(self) -> dict:
        return self.global_config

    def get_users(self) -> list:
        return self.users

    def get_user(self, user_id: str) -> dict:
        for user in self.users:
            if user["id"] == user_id:
                return user
        raise KeyError(f"User not found: {user_id}")

    def get_cron_config(self) -> dict:
        """Get cron configuration from global settings"""
        return {
            "schedule": self.global_config["sync_schedule"],
            "timezone": self.global_config["timezone"],
        }

    def __str__(self) -> str:
        users_str = ", ".join([str(user.get("id")) for user in self.users])
        return f"Config: users=[{users_str}], global={self.global_config}"
