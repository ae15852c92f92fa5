"""
tests/conftest.py -- Shared fixtures: settings, a stub anisette source and a
simulated provider.

SimulatedProvider stands in for requests.Session underneath ProviderTransport.
It implements just enough of the provider to run real handshakes:

  GSA   o=init / o=complete  -- server side of SRP-6a via the srp library's
                                Verifier, spd encrypted with AES-CBC
        o=apptokens          -- checksum check + AES-GCM token blob
        /validate, /auth/verify/*  -- two-factor delivery and code checks
  developer services         -- listTeams, listAllDevelopmentCerts,
                                revokeDevelopmentCert

Every request is recorded in provider.calls as (method, url, kwargs) so tests
can assert on what was (or was not) sent.
"""

from __future__ import annotations

import hashlib
import os
import plistlib
import time
from datetime import datetime
from typing import Any, Optional

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from srp import _pysrp

from anisette.data import AnisetteConfig, AnisetteData, AnisetteHolder
from auth.keys import apptoken_checksum, derive_extra_data_keys
from auth.srp import SRP_GROUP, SRP_HASH, derive_password
from core.config import Settings
from core.transport import ProviderTransport

GSA_URL = "https://gsa.test/grandslam/GsService2"
GSA_AUTH_URL = "https://gsa.test"
SERVICES_URL = "https://services.test/services"
ANISETTE_URL = "https://anisette.test"
SALT = bytes(range(0x41, 0x51))

CLIENT_INFO = "<MacBookPro15,1> <Mac OS X;13.5;22G74> <com.apple.AuthKit/1 (com.apple.akd/1.0 (com.apple.akd/1.0))>"

# ---------------------------------------------------------------------------
# Response / crypto helpers
# ---------------------------------------------------------------------------


class FakeResponse:
    """The slice of requests.Response the code under test reads."""

    def __init__(self, status_code: int = 200, content: bytes = b"", json_data: Any = None) -> None:
        self.status_code = status_code
        self.content = content
        self._json = json_data

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("response body is not JSON")
        return self._json


def plist_response(obj: Any, status_code: int = 200) -> FakeResponse:
    return FakeResponse(status_code, plistlib.dumps(obj, fmt=plistlib.FMT_XML))


def html_response(status_code: int, title: str) -> FakeResponse:
    body = f"<html><head><title>{title}</title></head><body>denied</body></html>"
    return FakeResponse(status_code, body.encode())


def encrypt_cbc(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def encrypt_gcm_token(sk: bytes, plaintext: bytes, header: bytes = b"XYZ") -> bytes:
    nonce = os.urandom(16)
    return header + nonce + AESGCM(sk).encrypt(nonce, plaintext, header)


def _long_to_bytes(n: int) -> bytes:
    return n.to_bytes((n.bit_length() + 7) // 8, "big")


def srp_verifier(password_key: bytes, salt: bytes) -> bytes:
    """v = g^x mod N with x = H(s | H(":" | p)), GSA style (no username in x).

    Both hashes run over the full 32-byte digests, as the srp library does.
    """
    inner = hashlib.sha256(b":" + password_key).digest()
    x = int.from_bytes(hashlib.sha256(salt + inner).digest(), "big")
    n, g = _pysrp.get_ng(SRP_GROUP, None, None)
    return _long_to_bytes(pow(g, x, n))


# ---------------------------------------------------------------------------
# Anisette stub
# ---------------------------------------------------------------------------


class StubAnisetteProvider:
    """Counts calls; X-Apple-I-MD changes on every snapshot."""

    def __init__(self, client_info: Optional[str] = CLIENT_INFO, delay: float = 0.0) -> None:
        self.calls = 0
        self.client_info = client_info
        self.delay = delay

    def get_headers(self) -> dict[str, str]:
        if self.delay:
            time.sleep(self.delay)
        self.calls += 1
        headers = {
            "X-Apple-I-MD": f"otp-{self.calls}",
            "X-Apple-I-MD-M": "machine-id",
            "X-Mme-Device-Id": "DEVICE-ID",
        }
        if self.client_info is not None:
            headers["X-Mme-Client-Info"] = self.client_info
        return headers


# ---------------------------------------------------------------------------
# Simulated provider
# ---------------------------------------------------------------------------


class SimulatedProvider:
    def __init__(
        self,
        username: str = "user@example.com",
        password: str = "correct-password",
        protocol: str = "s2k",
        iterations: int = 1000,
        second_factor: Optional[str] = None,
        otp: str = "123456",
        tamper_m2: bool = False,
        teams: Optional[list[dict]] = None,
        certificates: Optional[list[dict]] = None,
    ) -> None:
        self.username = username
        self.protocol = protocol
        self.iterations = iterations
        self.salt = SALT
        self.verifier = srp_verifier(derive_password(password, self.salt, iterations, protocol), self.salt)
        self.second_factor = second_factor
        self.otp = otp
        self.code_verified = False
        self.tamper_m2 = tamper_m2
        self.sk = bytes(range(32))
        self.adsid = "000123-08-abcdef"
        self.app_token = "xcode-app-token"
        self.teams = teams if teams is not None else [{"teamId": "TEAM000001", "name": "Jane Doe", "type": "Individual"}]
        self.certificates = certificates if certificates is not None else [
            {
                "name": "Apple Development: Jane Doe",
                "serialNumber": "1A2B3C4D5E6F",
                "expirationDate": datetime(2027, 1, 1, 12, 0, 0),
                "machineName": "plumesign",
                "certificateId": "CERT1",
            }
        ]
        self.calls: list[tuple[str, str, dict]] = []
        self._srp_server = None
        self.closed = False

    # requests.Session interface used by ProviderTransport
    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append((method, url, kwargs))
        if method == "POST" and url == GSA_URL:
            return self._gsa(plistlib.loads(kwargs["data"])["Request"])
        if method == "GET" and url == f"{GSA_URL}/validate":
            return self._validate(kwargs["headers"].get("security-code"))
        if url.startswith(f"{GSA_AUTH_URL}/auth/verify/"):
            return self._sms_or_push(method, url, kwargs.get("json") or {})
        if method == "POST" and url.startswith(SERVICES_URL):
            return self._services(url, plistlib.loads(kwargs["data"]))
        return FakeResponse(404, b"not found")

    def close(self) -> None:
        self.closed = True

    def gsa_ops(self) -> list[str]:
        return [plistlib.loads(kw["data"])["Request"]["o"] for m, u, kw in self.calls if u == GSA_URL]

    def service_actions(self) -> list[str]:
        return [u.split("?")[0].rsplit("/", 1)[-1] for m, u, kw in self.calls if u.startswith(SERVICES_URL)]

    # -- GSA ----------------------------------------------------------------

    def _gsa(self, req: dict) -> FakeResponse:
        op = req["o"]
        if op == "init":
            self._srp_server = _pysrp.Verifier(
                req["u"].encode(), self.salt, self.verifier, req["A2k"], hash_alg=SRP_HASH, ng_type=SRP_GROUP
            )
            _, server_public = self._srp_server.get_challenge()
            return plist_response(
                {
                    "Response": {
                        "Status": {"ec": 0, "em": ""},
                        "s": self.salt,
                        "i": self.iterations,
                        "B": server_public,
                        "c": "srp-cookie",
                        "sp": self.protocol,
                    }
                }
            )
        if op == "complete":
            hamk = self._srp_server.verify_session(req["M1"])
            if hamk is None:
                return plist_response({"Response": {"Status": {"ec": -20101, "em": "Your Apple ID or password was incorrect."}}})
            key, iv = derive_extra_data_keys(self._srp_server.get_session_key())
            spd = plistlib.dumps(
                {
                    "adsid": self.adsid,
                    "GsIdmsToken": "idms-token",
                    "sk": self.sk,
                    "c": b"account-cookie",
                    "fn": "Jane",
                    "ln": "Doe",
                }
            )
            status: dict[str, Any] = {"ec": 0, "em": ""}
            if self.second_factor and not self.code_verified:
                status["au"] = self.second_factor
            return plist_response(
                {
                    "Response": {
                        "Status": status,
                        "M2": b"\x00" * len(hamk) if self.tamper_m2 else hamk,
                        "spd": encrypt_cbc(key, iv, spd),
                    }
                }
            )
        if op == "apptokens":
            app = req["app"][0]
            if req["checksum"] != apptoken_checksum(self.sk, self.adsid, app):
                return plist_response({"Response": {"Status": {"ec": -22406, "em": "Bad checksum"}}})
            token = plistlib.dumps({"t": {app: {"token": self.app_token, "duration": 3600}}})
            return plist_response({"Response": {"Status": {"ec": 0}, "et": encrypt_gcm_token(self.sk, token)}})
        return plist_response({"Response": {"Status": {"ec": -1, "em": f"unknown op {op}"}}})

    def _validate(self, code: Optional[str]) -> FakeResponse:
        if code == self.otp:
            self.code_verified = True
            return plist_response({"ec": 0, "em": ""})
        return plist_response({"ec": -21669, "em": "Incorrect verification code."})

    def _sms_or_push(self, method: str, url: str, body: dict) -> FakeResponse:
        if url.endswith("/securitycode"):
            if body.get("securityCode", {}).get("code") == self.otp:
                self.code_verified = True
                return FakeResponse(200, b"{}")
            return html_response(400, "Incorrect verification code")
        return FakeResponse(200, b"")

    # -- developer services ---------------------------------------------------

    def _services(self, url: str, body: dict) -> FakeResponse:
        action = url.split("?")[0].rsplit("/", 1)[-1]
        if action == "listTeams.action":
            return plist_response({"resultCode": 0, "teams": self.teams})
        if action == "listAllDevelopmentCerts.action":
            return plist_response({"resultCode": 0, "certificates": self.certificates})
        if action == "revokeDevelopmentCert.action":
            serial = body["serialNumber"]
            remaining = [c for c in self.certificates if c["serialNumber"] != serial]
            if len(remaining) == len(self.certificates):
                return plist_response({"resultCode": 7252, "userString": "Certificate not found."})
            self.certificates = remaining
            return plist_response({"resultCode": 0, "resultString": "Certificate revoked."})
        return plist_response({"resultCode": 9999, "resultString": f"unknown action {action}"})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        gsa_url=GSA_URL,
        gsa_auth_url=GSA_AUTH_URL,
        services_url=SERVICES_URL,
        anisette_url=ANISETTE_URL,
        config_dir=tmp_path / "config",
        anisette_provision_libs=False,
    )


@pytest.fixture
def anisette_provider() -> StubAnisetteProvider:
    return StubAnisetteProvider()


@pytest.fixture
def anisette_config(tmp_path) -> AnisetteConfig:
    return AnisetteConfig(configuration_path=tmp_path / "config", server_url=ANISETTE_URL)


@pytest.fixture
def holder(anisette_config, anisette_provider) -> AnisetteHolder:
    return AnisetteHolder(AnisetteData.new(anisette_config, anisette_provider))


@pytest.fixture
def provider() -> SimulatedProvider:
    return SimulatedProvider()


@pytest.fixture
def transport(provider) -> ProviderTransport:
    return ProviderTransport(session=provider)
