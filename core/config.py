"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for plumesign happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. anisette_url -> ANISETTE_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Rejects endpoints that are not http(s)
      and timeouts that would make every request fail immediately.

Persisted state: config_dir holds the downloaded anisette libraries and the
identity store. It is created lazily by ensure_config_dir(), never at import.
No account credentials are ever written there.

Layer rule: core/ is the kernel. This module may not import from auth/,
anisette/, or developer/.
"""

import logging
import os
import sys
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("plumesign.config")

APP_DIR_NAME = "plumesign"


def default_config_dir() -> Path:
    """Return the platform-appropriate application-data directory."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME
    if sys.platform.startswith("win"):
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
        return base / APP_DIR_NAME
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / APP_DIR_NAME


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Provider endpoints
    # ------------------------------------------------------------------

    gsa_url: str = "https://gsa.apple.com/grandslam/GsService2"
    gsa_auth_url: str = "https://gsa.apple.com"
    services_url: str = "https://developerservices2.apple.com/services"
    # Seconds. Applied to every provider request by core.transport.
    request_timeout: float = 30.0

    # ------------------------------------------------------------------
    # Anisette (device identity)
    # ------------------------------------------------------------------

    anisette_url: str = "https://ani.sidestore.io"
    config_dir: Path = default_config_dir()
    # None means "decide by platform" -- only Linux needs the shared libraries.
    anisette_provision_libs: Optional[bool] = None

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_endpoints(self) -> "Settings":
        """Reject unusable endpoint and timeout values at startup."""
        for name in ("gsa_url", "gsa_auth_url", "services_url", "anisette_url"):
            value = getattr(self, name)
            if not value.startswith(("http://", "https://")):
                raise ValueError(f"{name.upper()} must be an http(s) URL, got {value!r}.")
            setattr(self, name, value.rstrip("/"))
        if self.request_timeout <= 0:
            raise ValueError("REQUEST_TIMEOUT must be a positive number of seconds.")
        return self

    @property
    def provision_libs(self) -> bool:
        if self.anisette_provision_libs is None:
            return sys.platform.startswith("linux")
        return self.anisette_provision_libs

    def ensure_config_dir(self) -> Path:
        """Create config_dir on first use and return it."""
        if not self.config_dir.exists():
            self.config_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Created configuration directory %s", self.config_dir)
        return self.config_dir


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and pass it to the component under test.
    """
    return Settings()
