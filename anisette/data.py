"""
anisette/data.py -- Device-identity ("anisette") header lifecycle.

An AnisetteData instance is one snapshot of the base headers produced by a
provider, stamped with the time it was generated. It is immutable: a refresh
produces a new instance, the old one is simply dropped.

Freshness windows (deliberately overlapping):
  needs_refresh  age > 60s  -- time to fetch a new snapshot
  is_valid       age < 90s  -- still acceptable to send

The 60-90s band is a grace period: a stale-but-valid snapshot can still be
used while a refresh happens. Anything 90s or older must never reach the
provider, so generate_headers() on invalid data raises StaleIdentityError
instead of returning headers.

Layer rule: anisette/ imports only core/.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

from core.config import Settings
from core.errors import StaleIdentityError, ValidationError

logger = logging.getLogger("plumesign.anisette")

REFRESH_AFTER_SECONDS = 60
VALID_FOR_SECONDS = 90

CLIENT_INFO_HEADER = "X-Mme-Client-Info"
XCODE_CLIENT_VERSION = "com.apple.AuthKit/1 (com.apple.dt.Xcode/3594.4.19)"

APP_INFO_HEADERS = {
    "X-Apple-App-Info": "com.apple.gs.xcode.auth",
    "X-Xcode-Version": "11.2 (11B41)",
}

# "Current provisioning data" flags GSA expects inside the request body.
CPD_HEADERS = {
    "bootstrap": "true",
    "icscrec": "true",
    "loc": "en_GB",
    "pbe": "false",
    "prkgen": "true",
    "svct": "iCloud",
}


class HeaderProvider(Protocol):
    """Anything that can produce a fresh base header set."""

    def get_headers(self) -> dict[str, str]: ...


@dataclass(frozen=True)
class AnisetteConfig:
    configuration_path: Path
    server_url: str
    provision_libs: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnisetteConfig":
        return cls(
            configuration_path=settings.config_dir,
            server_url=settings.anisette_url,
            provision_libs=settings.provision_libs,
        )


def rewrite_client_info(value: str, replacement: str = XCODE_CLIENT_VERSION) -> Optional[str]:
    """Swap the client-version part of an X-Mme-Client-Info value.

    The value looks like "<MacBookPro15,1> <Mac OS X;13.5;22G74> <com.apple.AuthKit/1 (...)>".
    Splitting on '<' gives ["", "MacBookPro15,1> ", "Mac OS X;...> ", "com.apple.AuthKit/1 (...)>"];
    the text of index 3 up to its '>' is replaced. Returns None if that
    segment does not exist.
    """
    segments = value.split("<")
    if len(segments) < 4:
        return None
    target = segments[3].split(">")[0]
    if not target:
        return None
    return value.replace(target, replacement)


@dataclass(frozen=True)
class AnisetteData:
    base_headers: dict[str, str]
    generated_at: float
    config: AnisetteConfig
    provider: Optional[HeaderProvider] = field(default=None, repr=False, compare=False)

    @classmethod
    def new(cls, config: AnisetteConfig, provider: HeaderProvider) -> "AnisetteData":
        """Provision dependencies if needed, then take a fresh header snapshot."""
        if config.provision_libs:
            # Local import: provisioning pulls in the transport only when it is used.
            from anisette.provider import ensure_provisioning_libs

            ensure_provisioning_libs(config.configuration_path)
        return cls._snapshot(config, provider)

    @classmethod
    def _snapshot(cls, config: AnisetteConfig, provider: HeaderProvider) -> "AnisetteData":
        base_headers = dict(provider.get_headers())
        logger.debug("Generated anisette snapshot with %d headers", len(base_headers))
        return cls(base_headers=base_headers, generated_at=time.time(), config=config, provider=provider)

    def refresh(self) -> "AnisetteData":
        if self.provider is None:
            raise ValidationError("anisette data has no provider to refresh from", step="anisette")
        # Provisioning already ran before the first snapshot.
        return AnisetteData._snapshot(self.config, self.provider)

    # ------------------------------------------------------------------
    # Freshness
    # ------------------------------------------------------------------

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.generated_at

    def needs_refresh(self, now: Optional[float] = None) -> bool:
        return self.age(now) > REFRESH_AFTER_SECONDS

    def is_valid(self, now: Optional[float] = None) -> bool:
        return self.age(now) < VALID_FOR_SECONDS

    # ------------------------------------------------------------------
    # Header generation
    # ------------------------------------------------------------------

    def generate_headers(self, cpd: bool = False, client_info: bool = False, app_info: bool = False) -> dict[str, str]:
        """Return the header set for one request.

        Raises StaleIdentityError if the snapshot is no longer valid.
        """
        if not self.is_valid():
            raise StaleIdentityError(
                f"anisette data is {self.age():.0f}s old (limit {VALID_FOR_SECONDS}s)", step="anisette"
            )

        headers = dict(self.base_headers)
        old_client_info = headers.pop(CLIENT_INFO_HEADER, None)

        if client_info:
            if old_client_info is None:
                return headers
            rewritten = rewrite_client_info(old_client_info)
            if rewritten is None:
                logger.warning("Unexpected %s format; sending base headers unchanged", CLIENT_INFO_HEADER)
                return dict(self.base_headers)
            headers[CLIENT_INFO_HEADER] = rewritten

        if app_info:
            headers.update(APP_INFO_HEADERS)

        if cpd:
            headers.update(CPD_HEADERS)

        return headers

    def as_cpd(self) -> dict[str, str]:
        """Headers as embedded in a GSA request body."""
        return self.generate_headers(cpd=True, client_info=False, app_info=False)

    def get_header(self, name: str) -> str:
        """Case-insensitive lookup across the full header set."""
        wanted = name.lower()
        for key, value in self.generate_headers(cpd=True, client_info=True, app_info=True).items():
            if key.lower() == wanted:
                return value
        raise ValidationError(f"anisette header {name!r} is not present", step="anisette")


def anisette_headers(config: AnisetteConfig, provider: Optional[HeaderProvider] = None) -> dict[str, str]:
    """Diagnostic entry point: a fresh snapshot's full header set."""
    if provider is not None:
        return AnisetteData.new(config, provider).generate_headers(cpd=True, client_info=True, app_info=True)

    from anisette.provider import RemoteAnisetteProvider

    remote = RemoteAnisetteProvider.from_config(config)
    try:
        return AnisetteData.new(config, remote).generate_headers(cpd=True, client_info=True, app_info=True)
    finally:
        remote.close()


class AnisetteHolder:
    """The session's current AnisetteData, refreshed proactively.

    current() returns data that is valid for at least the grace window. When
    the snapshot needs a refresh, exactly one caller performs it while holding
    the lock; concurrent callers wait and then reuse the new snapshot
    instead of issuing their own provider request.
    """

    def __init__(self, data: AnisetteData) -> None:
        self._data = data
        self._lock = threading.Lock()
        self.refresh_count = 0

    @property
    def data(self) -> AnisetteData:
        return self._data

    def current(self) -> AnisetteData:
        data = self._data
        if not data.needs_refresh():
            return data
        with self._lock:
            # Re-check: another thread may have refreshed while we waited.
            if self._data.needs_refresh():
                logger.info("Refreshing anisette data (%.0fs old)", self._data.age())
                self._data = self._data.refresh()
                self.refresh_count += 1
            return self._data
