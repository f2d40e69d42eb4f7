"""JSON file configuration provider.

Reads members, services and regional pricing from a single JSON document.
The parsed snapshot is cached by file modification time, so each refresh
sees the file as it was when read and edits are picked up on the next one.
"""

import threading
from pathlib import Path

from pydantic import ValidationError

from ibp_billing.core.config import BillingConfig
from ibp_billing.errors import ConfigurationError
from ibp_billing.observability import get_logger

logger = get_logger(__name__)


class JsonFileConfigProvider:
    """Implements IConfigProvider over a JSON file on disk."""

    def __init__(self, path: Path) -> None:
        """Initialize with the configuration file path.

        Args:
            path: Location of the JSON configuration document.
        """
        self._path = Path(path)
        self._lock = threading.Lock()
        self._cached: BillingConfig | None = None
        self._cached_mtime: float | None = None

    def get_config(self) -> BillingConfig:
        """Return the current configuration snapshot.

        Raises:
            ConfigurationError: If the file is missing or invalid.
        """
        try:
            mtime = self._path.stat().st_mtime
        except OSError as exc:
            raise ConfigurationError(f"configuration file not found: {self._path}") from exc

        with self._lock:
            if self._cached is not None and self._cached_mtime == mtime:
                return self._cached

            try:
                config = BillingConfig.model_validate_json(self._path.read_bytes())
            except (OSError, ValidationError) as exc:
                logger.error("billing_config_load_failed", path=str(self._path), error=str(exc))
                raise ConfigurationError(f"invalid configuration file: {self._path}") from exc

            self._cached = config
            self._cached_mtime = mtime
            logger.info(
                "billing_config_loaded",
                path=str(self._path),
                members=len(config.members),
                services=len(config.services),
                regions=len(config.pricing),
            )
            return config
