"""
auth/keys.py -- Purpose-scoped key derivation from the SRP shared secret.

Security design decisions:
  derive(): HMAC-SHA256 keyed by the shared secret over the UTF-8 label.
       Distinct labels give computationally independent outputs, so one
       secret can safely feed several purposes (payload key, payload IV,
       app-token checksum) without any two of them ever colliding.

  IV truncation: the CBC IV is the first 16 bytes of the 32-byte
       "extra data iv:" derivation. It is a prefix, not a re-encoding.

  KeyMaterial: secret bytes live in a bytearray inside a `with` block and
       are overwritten with zeros on exit. Python cannot promise that no
       other copy exists (the HMAC and cipher libraries copy internally),
       but the copies we own do not outlive the scope that needed them.

No function here logs or formats key bytes into a message.

Layer rule: no imports from anisette/ or developer/.
"""

from __future__ import annotations

import hashlib
import hmac

from core.errors import ValidationError

EXTRA_DATA_KEY_LABEL = "extra data key:"
EXTRA_DATA_IV_LABEL = "extra data iv:"

AES_KEY_SIZE = 32
IV_SIZE = 16


def derive(shared_secret: bytes, label: str) -> bytes:
    """Return HMAC-SHA256(shared_secret, label) as 32 raw bytes."""
    return hmac.new(bytes(shared_secret), label.encode("utf-8"), hashlib.sha256).digest()


def derive_extra_data_keys(shared_secret: bytes) -> tuple[bytes, bytes]:
    """Return (key, iv) for the encrypted server-provided data."""
    key = derive(shared_secret, EXTRA_DATA_KEY_LABEL)
    iv = derive(shared_secret, EXTRA_DATA_IV_LABEL)[:IV_SIZE]
    return key, iv


def apptoken_checksum(sk: bytes, adsid: str, app: str) -> bytes:
    """Checksum GSA expects on an app-token request: HMAC(sk, "apptokens" + adsid + app)."""
    mac = hmac.new(bytes(sk), b"", hashlib.sha256)
    mac.update(b"apptokens")
    mac.update(adsid.encode("utf-8"))
    mac.update(app.encode("utf-8"))
    return mac.digest()


class KeyMaterial:
    """A secret byte string with an explicit, scoped lifetime.

    Usage:
        with KeyMaterial(session_key) as km:
            key, iv = derive_extra_data_keys(km.value)
        # km's buffer is now all zeros and km.value raises
    """

    __slots__ = ("_buf", "_wiped")

    def __init__(self, data: bytes) -> None:
        self._buf = bytearray(data)
        self._wiped = False

    @property
    def value(self) -> bytes:
        if self._wiped:
            raise ValidationError("key material used after its scope ended")
        return bytes(self._buf)

    @property
    def wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        for i in range(len(self._buf)):
            self._buf[i] = 0
        self._wiped = True

    def __enter__(self) -> "KeyMaterial":
        return self

    def __exit__(self, *exc_info) -> None:
        self.wipe()

    def __repr__(self) -> str:
        state = "wiped" if self._wiped else f"{len(self._buf)} bytes"
        return f"<KeyMaterial {state}>"


class VerifiedSecret(KeyMaterial):
    """Session key whose server proof has already been checked.

    Only auth.srp constructs these, and only after M2 verification succeeds.
    auth.cipher.decrypt_extra_data() accepts nothing else.
    """

    __slots__ = ()
