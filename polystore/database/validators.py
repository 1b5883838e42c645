# ==============================================================================
# CONFIG VALIDATOR - Connection Configuration Checks
# ==============================================================================
# Enforces the per-type required-field contract before adapter creation
# ==============================================================================

from __future__ import annotations

import logging
from typing import Any, List, Mapping

from polystore.core.constants import ConnectionConstants
from polystore.core.exceptions import ConfigError

logger = logging.getLogger(__name__)


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class ConfigValidator:
    """
    Validates connection configurations.

    Types without an entry in the required-field table (custom
    adapters) only need a mapping.
    """

    @staticmethod
    def required_fields(db_type: str) -> List[str]:
        return list(ConnectionConstants.REQUIRED_FIELDS.get(db_type.strip().lower(), ()))

    @classmethod
    def validate(cls, db_type: Any, config: Any) -> None:
        """
        Validate a configuration for a database type.

        Args:
            db_type: Database type name
            config: Connection configuration mapping

        Raises:
            ConfigError: Listing every missing required field, or
                describing a malformed type name, config or port
        """
        if not isinstance(db_type, str) or not db_type.strip():
            raise ConfigError("Database type must be a non-empty string")
        if not isinstance(config, Mapping):
            raise ConfigError(
                f"Configuration for '{db_type}' must be a mapping, "
                f"got {type(config).__name__}"
            )

        missing = [name for name in cls.required_fields(db_type) if _is_missing(config.get(name))]
        if missing:
            raise ConfigError(
                f"Missing required field(s) for '{db_type}': {', '.join(missing)}",
                missing_fields=missing,
            )

        if config.get("port") is not None:
            cls._validate_port(db_type, config["port"])

    @staticmethod
    def _validate_port(db_type: str, port: Any) -> None:
        try:
            number = int(port)
        except (TypeError, ValueError) as e:
            raise ConfigError(
                f"Invalid port for '{db_type}': {port!r}",
                details={"port": repr(port)},
            ) from e
        if isinstance(port, bool) or not 0 < number < 65536:
            raise ConfigError(
                f"Port for '{db_type}' out of range: {port!r}",
                details={"port": repr(port)},
            )
