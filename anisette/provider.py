"""
anisette/provider.py -- Where base anisette headers come from.

RemoteAnisetteProvider asks an anisette server (omnisette-server, Provision's
anisette-server, or a public instance) for the machine-generated OTP headers
and fills in the stable device identity from IdentityStore.

ensure_provisioning_libs() is the one-time dependency step a local anisette
server needs on Linux: libstoreservicescore.so and libCoreADI.so, taken from
the Apple Music APK. It is gated by a file-existence check, so it is safe to
call on every startup.
"""

import base64
import io
import logging
import platform
import uuid
import zipfile
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional

from anisette.data import AnisetteConfig
from anisette.store import IdentityStore
from core.errors import ParseError, TransportError
from core.transport import ProviderTransport

logger = logging.getLogger("plumesign.anisette")

APK_URL = "https://apps.mzstatic.com/content/android-apple-music-apk/applemusic.apk"
PROVISIONING_LIBS = ("libstoreservicescore.so", "libCoreADI.so")

# platform.machine() -> APK lib subdirectory
_APK_ARCH = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
    "aarch64": "arm64-v8a",
    "arm64": "arm64-v8a",
    "armv7l": "armeabi-v7a",
    "armv7": "armeabi-v7a",
}

DEFAULT_CLIENT_INFO = "<MacBookPro13,2> <macOS;13.1;22C65> <com.apple.AuthKit/1 (com.apple.dt.Xcode/3594.4.19)>"

_REQUIRED_HEADERS = ("X-Apple-I-MD", "X-Apple-I-MD-M")


def _client_time() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


class RemoteAnisetteProvider:
    """Fetch base anisette headers from an anisette server over HTTP."""

    def __init__(
        self,
        server_url: str,
        store: Optional[IdentityStore] = None,
        transport: Optional[ProviderTransport] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self.store = store
        self._owns_transport = transport is None
        self.transport = transport or ProviderTransport(timeout=10)
        self._device_id: Optional[str] = None
        self._local_user_id: Optional[str] = None

    @classmethod
    def from_config(cls, config: AnisetteConfig, transport: Optional[ProviderTransport] = None) -> "RemoteAnisetteProvider":
        config.configuration_path.mkdir(parents=True, exist_ok=True)
        store = IdentityStore(config.configuration_path / "identity.db")
        return cls(config.server_url, store=store, transport=transport)

    def _identity(self, key: str) -> str:
        def factory() -> str:
            return str(uuid.uuid4()).upper()

        if self.store is not None:
            return self.store.get_or_create(key, factory)
        if key == "device_id":
            self._device_id = self._device_id or factory()
            return self._device_id
        self._local_user_id = self._local_user_id or factory()
        return self._local_user_id

    @property
    def device_id(self) -> str:
        return self._identity("device_id")

    @property
    def local_user_id(self) -> str:
        return self._identity("local_user_id")

    def close(self) -> None:
        """Release the identity store connection and any transport we created."""
        if self.store is not None:
            self.store.close()
            self.store = None
        if self._owns_transport:
            self.transport.close()

    def get_headers(self) -> dict[str, str]:
        resp = self.transport.get(self.server_url, step="anisette")
        if not 200 <= resp.status_code < 300:
            raise TransportError(f"Anisette server {self.server_url} returned HTTP {resp.status_code}", step="anisette")
        try:
            data = resp.json()
        except ValueError as e:
            raise ParseError("Anisette server returned non-JSON data", step="anisette") from e
        if not isinstance(data, dict):
            raise ParseError("Anisette server returned an unexpected JSON shape", step="anisette")

        missing = [name for name in _REQUIRED_HEADERS if not data.get(name)]
        if missing:
            raise ParseError(f"Anisette server response is missing {', '.join(missing)}", step="anisette")

        headers = {str(k): str(v) for k, v in data.items() if v is not None}
        headers.setdefault("X-Mme-Device-Id", self.device_id)
        headers.setdefault("X-Apple-I-MD-LU", base64.b64encode(self.local_user_id.encode()).decode())
        headers.setdefault("X-Apple-I-MD-RINFO", "17106176")
        headers.setdefault("X-Apple-I-SRL-NO", "0")
        headers.setdefault("X-Apple-I-Client-Time", _client_time())
        headers.setdefault("X-Apple-I-TimeZone", "UTC")
        headers.setdefault("X-Apple-Locale", "en_US")
        headers.setdefault("X-Mme-Client-Info", DEFAULT_CLIENT_INFO)
        return headers


def ensure_provisioning_libs(
    configuration_path: Path,
    transport: Optional[ProviderTransport] = None,
    arch: Optional[str] = None,
) -> Optional[Path]:
    """Download and unpack the anisette shared libraries if they are missing.

    Returns the library directory, or None on architectures the APK does not
    ship libraries for.
    """
    apk_arch = _APK_ARCH.get((arch or platform.machine()).lower())
    if apk_arch is None:
        logger.debug("No anisette libraries for architecture %s", arch or platform.machine())
        return None

    lib_path = Path(configuration_path) / "lib" / apk_arch
    if all((lib_path / lib).exists() for lib in PROVISIONING_LIBS):
        return lib_path

    lib_path.mkdir(parents=True, exist_ok=True)

    logger.info("Downloading Apple Music APK...")
    transport = transport or ProviderTransport(timeout=300)
    resp = transport.get(APK_URL, step="provision")
    if not 200 <= resp.status_code < 300:
        raise TransportError(f"APK download returned HTTP {resp.status_code}", step="provision")

    prefix = f"lib/{apk_arch}/"
    try:
        with zipfile.ZipFile(io.BytesIO(resp.content)) as archive:
            for name in archive.namelist():
                if not (name.startswith(prefix) and name.endswith(".so")):
                    continue
                file_name = PurePosixPath(name).name
                if file_name in PROVISIONING_LIBS:
                    (lib_path / file_name).write_bytes(archive.read(name))
    except zipfile.BadZipFile as e:
        raise ParseError("Downloaded APK is not a valid zip archive", step="provision") from e

    missing = [lib for lib in PROVISIONING_LIBS if not (lib_path / lib).exists()]
    if missing:
        raise ParseError(f"APK did not contain {', '.join(missing)} for {apk_arch}", step="provision")

    logger.info("Anisette dependency extracted to: %s", lib_path)
    return lib_path
