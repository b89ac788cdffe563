"""Environment-driven settings for the RBAC services."""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value: {raw}, using default {default}")
        return default


@dataclass
class RbacSettings:
    """
    Runtime configuration.

    Every field maps to one environment variable; see from_env().
    """

    dynamodb_table_name: Optional[str] = None
    aws_region: str = "us-west-2"
    aws_profile: Optional[str] = None
    permission_cache_ttl_seconds: int = 0
    enable_authentication: bool = True
    identity_header: str = "X-User-Id"
    auto_register_users: bool = True
    bootstrap_admin_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RbacSettings":
        """Read settings from the process environment."""
        return cls(
            dynamodb_table_name=os.environ.get("DYNAMODB_RBAC_TABLE_NAME") or None,
            aws_region=os.environ.get(
                "AWS_REGION", os.environ.get("AWS_DEFAULT_REGION", "us-west-2")
            ),
            aws_profile=os.environ.get("AWS_PROFILE") or None,
            permission_cache_ttl_seconds=_env_int(
                "RBAC_PERMISSION_CACHE_TTL_SECONDS", 0
            ),
            enable_authentication=_env_bool("ENABLE_AUTHENTICATION", "true"),
            identity_header=os.environ.get("RBAC_IDENTITY_HEADER", "X-User-Id"),
            auto_register_users=_env_bool("RBAC_AUTO_REGISTER_USERS", "true"),
            bootstrap_admin_id=os.environ.get("RBAC_BOOTSTRAP_ADMIN_ID") or None,
        )


# Global settings instance (singleton)
_settings_instance: Optional[RbacSettings] = None


def get_settings() -> RbacSettings:
    """Get or create the global RbacSettings instance."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = RbacSettings.from_env()
    return _settings_instance


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings_instance
    _settings_instance = None
