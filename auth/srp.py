"""
auth/srp.py -- GrandSlam (GSA) login via SRP-6a.

Handshake (one attempt):
  init      send A, supported protocols and username; receive salt s,
            iteration count i, server public value B, cookie c, protocol sp
  complete  send client proof M1 with the cookie; receive server proof M2
            and the encrypted server-provided data (spd)
  verify    check M2 against the locally computed H(A, M1, K). A mismatch is
            final: nothing from that response is used
  decrypt   only now decrypt spd with keys derived from the verified session
            key, and read the account metadata out of it

Security design decisions:
  SRP math: the `srp` library's pure-Python implementation, SHA-256 over the
       2048-bit RFC 5054 group, RFC 5054 padding and no username in x -- the
       parameters GSA uses. The password is pre-hashed (PBKDF2) before it
       enters the SRP client; the plain password never leaves this module.

  Secret lifetime: each attempt lives inside `with _Handshake(...)`. On any
       exit -- success, provider error, proof mismatch, KeyboardInterrupt --
       the verified session key is zeroed and the SRP client is dropped.
       There is no partially-authenticated state to reuse.

  Error mapping: provider code -20101 at the complete step means the proof
       did not check out server-side (wrong password) and surfaces as
       AuthProofError, the same type as a local M2 mismatch. A rejected
       one-time code is SecondFactorError. Transport failures stay
       TransportError. The three are never collapsed.

Two-factor: when the complete step's Status carries `au`, the provider wants
a one-time code. The code is delivered (trusted-device push or SMS), asked for
through the caller's otp_prompt callback, submitted, and then a fresh
handshake is run; only that second, fully verified handshake is returned.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import plistlib
from typing import TYPE_CHECKING, Any, Callable, Optional

from srp import _pysrp

from auth.cipher import decrypt_extra_data, decrypt_gcm_token
from auth.envelope import ServerEnvelope, decode, decode_unwrapped, error_from_status, load_plist
from auth.keys import VerifiedSecret, apptoken_checksum
from core.config import Settings, get_settings
from core.errors import AuthProofError, ParseError, SecondFactorError, ValidationError
from core.models import XCODE_APP_ID, Credential, GsaAccount
from core.transport import ProviderTransport

if TYPE_CHECKING:
    from anisette.data import AnisetteHolder

logger = logging.getLogger("plumesign.gsa")

# GSA parameters, set once for the process. Both flags are module-level in
# the srp library and apply to every User/Verifier it creates.
_pysrp.rfc5054_enable()
_pysrp.no_username_in_x()

SRP_HASH = _pysrp.SHA256
SRP_GROUP = _pysrp.NG_2048

SUPPORTED_PROTOCOLS = ["s2k", "s2k_fo"]
USER_AGENT = "akd/1.0 CFNetwork/978.0.7 Darwin/18.7.0"

# Provider codes meaning "the password/proof was wrong".
INVALID_CREDENTIAL_CODES = frozenset({-20101})

# Status.au value -> delivery method handed to otp_prompt
SECOND_FACTOR_METHODS = {
    "trustedDeviceSecondaryAuth": "trusted_device",
    "secondaryAuth": "sms",
}

OtpPrompt = Callable[[str], Optional[str]]


def derive_password(password: str, salt: bytes, iterations: int, protocol: str) -> bytes:
    """Pre-hash the password the way GSA expects before SRP.

    s2k:    PBKDF2-HMAC-SHA256(SHA256(password), salt, i, 32)
    s2k_fo: same, but the SHA-256 digest is hex-encoded first
    """
    digest = hashlib.sha256(password.encode("utf-8")).digest()
    if protocol == "s2k_fo":
        digest = digest.hex().encode("ascii")
    elif protocol != "s2k":
        raise ParseError(f"unsupported password protocol {protocol!r}", step="init")
    return hashlib.pbkdf2_hmac("sha256", digest, salt, iterations, dklen=32)


def _require(payload: dict[str, Any], key: str, kind: type, step: str) -> Any:
    value = payload.get(key)
    if value is None or not isinstance(value, kind) or isinstance(value, bool):
        raise ParseError(f"response field {key!r} is missing or not {kind.__name__}", step=step)
    return value


class _Handshake:
    """State for one SRP attempt. Must be used as a context manager."""

    def __init__(self, username: str) -> None:
        self.username = username
        self._client = _pysrp.User(username.encode("utf-8"), b"", hash_alg=SRP_HASH, ng_type=SRP_GROUP)
        _, self.client_public = self._client.start_authentication()
        self._secret: Optional[VerifiedSecret] = None

    def __enter__(self) -> "_Handshake":
        return self

    def __exit__(self, *exc_info) -> None:
        if self._secret is not None:
            self._secret.wipe()
        if self._client is not None:
            self._client.p = b""
        self._client = None

    def client_proof(self, password: str, salt: bytes, iterations: int, protocol: str, server_public: bytes) -> bytes:
        self._client.p = derive_password(password, salt, iterations, protocol)
        m1 = self._client.process_challenge(salt, server_public)
        if m1 is None:
            raise AuthProofError("server public value failed the SRP-6a safety check", step="complete")
        return m1

    def verify(self, server_proof: bytes) -> VerifiedSecret:
        self._client.verify_session(server_proof)
        if not self._client.authenticated():
            raise AuthProofError("server proof did not match; refusing to continue", step="verify")
        self._secret = VerifiedSecret(self._client.get_session_key())
        return self._secret


def account_from_spd(username: str, spd: Any) -> GsaAccount:
    if not isinstance(spd, dict):
        raise ParseError("decrypted server data is not a dictionary", step="decrypt")
    adsid = spd.get("adsid")
    token = spd.get("GsIdmsToken")
    if not adsid or not token:
        raise ParseError("decrypted server data lacks adsid/GsIdmsToken", step="decrypt")
    return GsaAccount(
        username=username,
        adsid=str(adsid),
        idms_token=str(token),
        sk=spd.get("sk"),
        cookie=spd.get("c"),
        first_name=spd.get("fn"),
        last_name=spd.get("ln"),
    )


class GsaAuthenticator:
    """Drives the GSA login end to end.

    anisette is the session's AnisetteHolder; every request body carries a
    fresh cpd from it.
    """

    def __init__(
        self,
        transport: ProviderTransport,
        anisette: "AnisetteHolder",
        settings: Optional[Settings] = None,
        max_code_attempts: int = 3,
    ) -> None:
        self.transport = transport
        self.anisette = anisette
        self.settings = settings or get_settings()
        self.max_code_attempts = max_code_attempts

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _gsa_request(self, params: dict[str, Any], step: str) -> ServerEnvelope:
        data = self.anisette.current()
        body = {
            "Header": {"Version": "1.0.1"},
            "Request": {"cpd": data.as_cpd(), **params},
        }
        headers = {
            "Content-Type": "text/x-xml-plist",
            "Accept": "*/*",
            "User-Agent": USER_AGENT,
        }
        client_info = data.generate_headers(client_info=True).get("X-Mme-Client-Info")
        if client_info:
            headers["X-MMe-Client-Info"] = client_info

        resp = self.transport.post(
            self.settings.gsa_url,
            data=plistlib.dumps(body, fmt=plistlib.FMT_XML),
            headers=headers,
            step=step,
        )
        envelope = decode(resp)
        if envelope.error is not None:
            envelope.error.step = step
        return envelope

    def _second_factor_headers(self, account: GsaAccount) -> dict[str, str]:
        identity = base64.b64encode(f"{account.adsid}:{account.idms_token}".encode()).decode()
        headers = {
            "Content-Type": "text/x-xml-plist",
            "User-Agent": "Xcode",
            "Accept": "text/x-xml-plist",
            "Accept-Language": "en-us",
            "X-Apple-Identity-Token": identity,
            "X-Apple-I-Identity-Id": account.adsid,
        }
        headers.update(self.anisette.current().generate_headers(client_info=True, app_info=True))
        return headers

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, credential: Credential, otp_prompt: Optional[OtpPrompt] = None) -> GsaAccount:
        """Authenticate, handling a two-factor challenge through otp_prompt.

        Raises AuthProofError (wrong password), SecondFactorError (wrong code),
        AuthServerError (other provider rejection), TransportError, ParseError
        or DecryptionError. Never returns unverified data.
        """
        account, method = self._handshake(credential)
        if method is None:
            return account

        logger.info("Two-factor authentication required (%s)", method)
        if otp_prompt is None:
            raise ValidationError("a one-time code is required but no prompt was supplied", step="second_factor")
        self._second_factor(account, method, otp_prompt)

        logger.info("Re-authenticating after two-factor verification")
        account, method = self._handshake(credential)
        if method is not None:
            raise ParseError("provider still requests a one-time code after accepting one", step="second_factor")
        return account

    def _handshake(self, credential: Credential) -> tuple[GsaAccount, Optional[str]]:
        username = credential.username
        with _Handshake(username) as hs:
            logger.debug("GSA: sending SRP init")
            init = self._gsa_request(
                {"A2k": hs.client_public, "ps": SUPPORTED_PROTOCOLS, "u": username, "o": "init"},
                step="init",
            ).raise_for_error()

            protocol = init.get("sp", "s2k")
            m1 = hs.client_proof(
                credential.password,
                salt=_require(init, "s", bytes, "init"),
                iterations=_require(init, "i", int, "init"),
                protocol=protocol,
                server_public=_require(init, "B", bytes, "init"),
            )

            logger.debug("GSA: sending SRP proof")
            complete = self._gsa_request(
                {"c": _require(init, "c", object, "init"), "M1": m1, "u": username, "o": "complete"},
                step="complete",
            )
            if complete.error is not None and complete.error.code in INVALID_CREDENTIAL_CODES:
                raise AuthProofError(
                    f"incorrect username or password: {complete.error.message}", step="complete"
                ) from complete.error
            payload = complete.raise_for_error()

            secret = hs.verify(_require(payload, "M2", bytes, "verify"))
            spd = load_plist(decrypt_extra_data(secret, _require(payload, "spd", bytes, "decrypt")))
            account = account_from_spd(username, spd)

        method = SECOND_FACTOR_METHODS.get(complete.status.get("au"))
        logger.info("GSA: authenticated as %s", username)
        return account, method

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    def _second_factor(self, account: GsaAccount, method: str, otp_prompt: OtpPrompt) -> None:
        self._request_code(account, method)
        last_error: Optional[SecondFactorError] = None
        for attempt in range(1, self.max_code_attempts + 1):
            code = (otp_prompt(method) or "").strip()
            if not code:
                continue
            try:
                self._submit_code(account, method, code)
                logger.info("Two-factor code accepted")
                return
            except SecondFactorError as e:
                last_error = e
                logger.warning("Two-factor code rejected (attempt %d/%d)", attempt, self.max_code_attempts)
        if last_error is not None:
            raise last_error
        raise ValidationError("no one-time code was entered", step="second_factor")

    def _request_code(self, account: GsaAccount, method: str) -> None:
        headers = self._second_factor_headers(account)
        base = self.settings.gsa_auth_url
        if method == "trusted_device":
            resp = self.transport.get(f"{base}/auth/verify/trusteddevice", headers=headers, step="second_factor")
        else:
            headers["Content-Type"] = "application/json"
            resp = self.transport.put(
                f"{base}/auth/verify/phone/",
                headers=headers,
                json={"phoneNumber": {"id": 1}, "mode": "sms"},
                step="second_factor",
            )
        if not 200 <= resp.status_code < 300:
            error = error_from_status(resp.status_code, resp.text)
            error.step = "second_factor"
            raise error

    def _submit_code(self, account: GsaAccount, method: str, code: str) -> None:
        headers = self._second_factor_headers(account)
        if method == "trusted_device":
            headers["security-code"] = code
            resp = self.transport.get(f"{self.settings.gsa_url}/validate", headers=headers, step="second_factor")
            error = decode_unwrapped(resp).error
        else:
            headers["Content-Type"] = "application/json"
            resp = self.transport.post(
                f"{self.settings.gsa_auth_url}/auth/verify/phone/securitycode",
                headers=headers,
                json={"securityCode": {"code": code}, "phoneNumber": {"id": 1}, "mode": "sms"},
                step="second_factor",
            )
            error = None if 200 <= resp.status_code < 300 else error_from_status(resp.status_code, resp.text)
        if error is not None:
            raise SecondFactorError(error.code, error.message, step="second_factor")

    # ------------------------------------------------------------------
    # App token
    # ------------------------------------------------------------------

    def fetch_app_token(self, account: GsaAccount, app: str = XCODE_APP_ID) -> str:
        """Exchange the GSA login for an app-scoped token (developer services)."""
        if not account.sk or not account.cookie:
            raise ValidationError("account has no session key/cookie; log in first", step="app_token")

        payload = self._gsa_request(
            {
                "u": account.adsid,
                "app": [app],
                "c": account.cookie,
                "t": account.idms_token,
                "checksum": apptoken_checksum(account.sk, account.adsid, app),
                "o": "apptokens",
            },
            step="app_token",
        ).raise_for_error()

        decrypted = load_plist(decrypt_gcm_token(account.sk, _require(payload, "et", bytes, "app_token")))
        tokens = decrypted.get("t") if isinstance(decrypted, dict) else None
        entry = tokens.get(app) if isinstance(tokens, dict) else None
        token = entry.get("token") if isinstance(entry, dict) else None
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        if not token:
            raise ParseError(f"no token for {app} in app token response", step="app_token")
        return token
