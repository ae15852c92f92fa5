"""Unit tests for anisette/provider.py and anisette/store.py.

Covers:
- RemoteAnisetteProvider: required headers, identity defaults, stable device id
  across provider instances, close(), HTTP / JSON / shape failures
- ensure_provisioning_libs(): extraction from the APK, idempotence (no download
  when the libraries exist), unknown architectures, bad archives
- IdentityStore: get/set/get_or_create/clear
"""

import io
import sqlite3
import zipfile
from unittest.mock import MagicMock

import pytest
import requests

from conftest import FakeResponse
from anisette.data import AnisetteConfig
from anisette.provider import (
    DEFAULT_CLIENT_INFO,
    PROVISIONING_LIBS,
    RemoteAnisetteProvider,
    ensure_provisioning_libs,
)
from anisette.store import IdentityStore
from core.errors import ParseError, TransportError
from core.transport import ProviderTransport

ANISETTE_JSON = {
    "X-Apple-I-MD": "AAAABQAAABA=",
    "X-Apple-I-MD-M": "machine==",
    "X-Apple-I-MD-RINFO": "17106176",
    "X-Apple-I-Client-Time": "2026-01-01T00:00:00Z",
}


def _transport(response=None, side_effect=None) -> tuple[ProviderTransport, MagicMock]:
    session = MagicMock()
    session.request.return_value = response
    session.request.side_effect = side_effect
    return ProviderTransport(session=session), session


def _apk(arch: str, libs=PROVISIONING_LIBS) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as archive:
        for lib in libs:
            archive.writestr(f"lib/{arch}/{lib}", f"binary {lib}".encode())
        archive.writestr(f"lib/{arch}/libother.so", b"ignored")
        archive.writestr("classes.dex", b"ignored")
    return buf.getvalue()


# ---------------------------------------------------------------------------
# RemoteAnisetteProvider
# ---------------------------------------------------------------------------


class TestRemoteAnisetteProvider:
    def test_returns_server_headers_with_defaults(self):
        transport, session = _transport(FakeResponse(200, b"{}", ANISETTE_JSON))
        provider = RemoteAnisetteProvider("https://anisette.test/", transport=transport)

        headers = provider.get_headers()

        assert session.request.call_args.args == ("GET", "https://anisette.test")
        assert headers["X-Apple-I-MD"] == "AAAABQAAABA="
        assert headers["X-Apple-I-Client-Time"] == "2026-01-01T00:00:00Z"
        assert headers["X-Mme-Client-Info"] == DEFAULT_CLIENT_INFO
        assert headers["X-Mme-Device-Id"] == provider.device_id
        assert "X-Apple-I-MD-LU" in headers

    def test_device_id_is_stable_within_instance(self):
        transport, _ = _transport(FakeResponse(200, b"{}", ANISETTE_JSON))
        provider = RemoteAnisetteProvider("https://anisette.test", transport=transport)
        assert provider.get_headers()["X-Mme-Device-Id"] == provider.get_headers()["X-Mme-Device-Id"]

    def test_device_id_persists_across_instances(self, tmp_path):
        config = AnisetteConfig(configuration_path=tmp_path / "config", server_url="https://anisette.test")
        first_provider = RemoteAnisetteProvider.from_config(config)
        first = first_provider.device_id
        first_provider.close()
        second_provider = RemoteAnisetteProvider.from_config(config)
        second = second_provider.device_id
        second_provider.close()
        assert first == second
        assert (tmp_path / "config" / "identity.db").exists()

    def test_close_releases_store_and_owned_transport(self, tmp_path):
        store = IdentityStore(tmp_path / "identity.db")
        provider = RemoteAnisetteProvider("https://anisette.test", store=store)
        provider.transport.session = MagicMock()
        session = provider.transport.session

        provider.close()

        assert provider.store is None
        session.close.assert_called_once()
        with pytest.raises(sqlite3.ProgrammingError):
            store.get("device_id")

    def test_close_leaves_borrowed_transport_open(self):
        transport, session = _transport(FakeResponse(200, b"{}", ANISETTE_JSON))
        provider = RemoteAnisetteProvider("https://anisette.test", transport=transport)
        provider.close()
        session.close.assert_not_called()

    def test_http_error(self):
        transport, _ = _transport(FakeResponse(503, b"down"))
        with pytest.raises(TransportError, match="503"):
            RemoteAnisetteProvider("https://anisette.test", transport=transport).get_headers()

    def test_connection_error(self):
        transport, _ = _transport(side_effect=requests.ConnectionError("refused"))
        with pytest.raises(TransportError) as exc_info:
            RemoteAnisetteProvider("https://anisette.test", transport=transport).get_headers()
        assert exc_info.value.step == "anisette"

    def test_non_json(self):
        transport, _ = _transport(FakeResponse(200, b"<html>"))
        with pytest.raises(ParseError, match="non-JSON"):
            RemoteAnisetteProvider("https://anisette.test", transport=transport).get_headers()

    def test_json_not_an_object(self):
        transport, _ = _transport(FakeResponse(200, b"[]", ["a"]))
        with pytest.raises(ParseError):
            RemoteAnisetteProvider("https://anisette.test", transport=transport).get_headers()

    def test_missing_otp_headers(self):
        transport, _ = _transport(FakeResponse(200, b"{}", {"X-Apple-I-MD-M": "machine=="}))
        with pytest.raises(ParseError, match="X-Apple-I-MD"):
            RemoteAnisetteProvider("https://anisette.test", transport=transport).get_headers()


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


class TestEnsureProvisioningLibs:
    def test_extracts_libraries(self, tmp_path):
        transport, session = _transport(FakeResponse(200, _apk("x86_64")))

        lib_path = ensure_provisioning_libs(tmp_path, transport=transport, arch="x86_64")

        assert lib_path == tmp_path / "lib" / "x86_64"
        for lib in PROVISIONING_LIBS:
            assert (lib_path / lib).read_bytes() == f"binary {lib}".encode()
        assert not (lib_path / "libother.so").exists()
        session.request.assert_called_once()

    def test_second_call_does_not_download(self, tmp_path):
        transport, session = _transport(FakeResponse(200, _apk("arm64-v8a")))
        ensure_provisioning_libs(tmp_path, transport=transport, arch="aarch64")
        ensure_provisioning_libs(tmp_path, transport=transport, arch="aarch64")
        assert session.request.call_count == 1

    def test_existing_libraries_skip_network(self, tmp_path):
        lib_path = tmp_path / "lib" / "x86_64"
        lib_path.mkdir(parents=True)
        for lib in PROVISIONING_LIBS:
            (lib_path / lib).write_bytes(b"already here")
        transport, session = _transport()

        assert ensure_provisioning_libs(tmp_path, transport=transport, arch="amd64") == lib_path
        session.request.assert_not_called()

    def test_unknown_architecture_is_noop(self, tmp_path):
        transport, session = _transport()
        assert ensure_provisioning_libs(tmp_path, transport=transport, arch="sparc64") is None
        session.request.assert_not_called()

    def test_bad_archive(self, tmp_path):
        transport, _ = _transport(FakeResponse(200, b"not a zip"))
        with pytest.raises(ParseError, match="zip"):
            ensure_provisioning_libs(tmp_path, transport=transport, arch="x86_64")

    def test_archive_without_libraries(self, tmp_path):
        transport, _ = _transport(FakeResponse(200, _apk("x86", libs=("libCoreADI.so",))))
        with pytest.raises(ParseError, match="libstoreservicescore.so"):
            ensure_provisioning_libs(tmp_path, transport=transport, arch="i686")

    def test_download_http_error(self, tmp_path):
        transport, _ = _transport(FakeResponse(404, b"gone"))
        with pytest.raises(TransportError):
            ensure_provisioning_libs(tmp_path, transport=transport, arch="x86_64")


# ---------------------------------------------------------------------------
# IdentityStore
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path):
    s = IdentityStore(tmp_path / "identity.db")
    yield s
    s.close()


class TestIdentityStore:
    def test_get_missing(self, store):
        assert store.get("device_id") is None

    def test_set_and_get(self, store):
        store.set("device_id", "ABC")
        assert store.get("device_id") == "ABC"

    def test_set_replaces(self, store):
        store.set("device_id", "ABC")
        store.set("device_id", "DEF")
        assert store.get("device_id") == "DEF"

    def test_get_or_create_calls_factory_once(self, store):
        factory = MagicMock(return_value="NEW")
        assert store.get_or_create("device_id", factory) == "NEW"
        assert store.get_or_create("device_id", factory) == "NEW"
        factory.assert_called_once()

    def test_clear(self, store):
        store.set("device_id", "ABC")
        store.set("local_user_id", "XYZ")
        assert store.clear() == 2
        assert store.get("device_id") is None
