"""
auth/cipher.py -- The only place raw symmetric decryption happens.

Two payload formats come back from GSA:

  spd (server-provided data)  AES-256-CBC, PKCS#7, key/IV derived from the
                              SRP session key via auth.keys.
  app-token blob ("et")       AES-256-GCM keyed by the account's `sk`, laid
                              out as 3-byte header | 16-byte nonce | ct+tag,
                              with the header as associated data.

Any failure -- bad key length, misaligned ciphertext, bad padding, bad tag --
is a DecryptionError. Partial or unpadded plaintext is never returned.
"""

from __future__ import annotations

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from auth.keys import AES_KEY_SIZE, IV_SIZE, VerifiedSecret, derive_extra_data_keys
from core.errors import DecryptionError, ValidationError

_BLOCK_BITS = 128
_GCM_HEADER_SIZE = 3
_GCM_NONCE_SIZE = 16
_GCM_TAG_SIZE = 16


def decrypt_cbc(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    """Decrypt AES-256-CBC with PKCS#7 padding."""
    if len(key) != AES_KEY_SIZE:
        raise DecryptionError(f"expected a {AES_KEY_SIZE}-byte key, got {len(key)} bytes", step="decrypt")
    if len(iv) != IV_SIZE:
        raise DecryptionError(f"expected a {IV_SIZE}-byte IV, got {len(iv)} bytes", step="decrypt")
    if not ciphertext or len(ciphertext) % (_BLOCK_BITS // 8):
        raise DecryptionError("ciphertext is not a whole number of AES blocks", step="decrypt")

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise DecryptionError("invalid PKCS#7 padding in decrypted payload", step="decrypt") from e


def decrypt_extra_data(secret: VerifiedSecret, ciphertext: bytes) -> bytes:
    """Decrypt the spd blob returned with the server proof.

    Requires a VerifiedSecret: decrypting before M2 has been checked would
    mean trusting ciphertext from an unauthenticated peer.
    """
    if not isinstance(secret, VerifiedSecret):
        raise ValidationError("server data can only be decrypted with a verified session key", step="decrypt")
    key, iv = derive_extra_data_keys(secret.value)
    return decrypt_cbc(key, iv, ciphertext)


def decrypt_gcm_token(sk: bytes, blob: bytes) -> bytes:
    """Decrypt an app-token blob with AES-256-GCM."""
    if len(sk) != AES_KEY_SIZE:
        raise DecryptionError(f"expected a {AES_KEY_SIZE}-byte key, got {len(sk)} bytes", step="app_token")
    if len(blob) < _GCM_HEADER_SIZE + _GCM_NONCE_SIZE + _GCM_TAG_SIZE:
        raise DecryptionError("app token blob is too short", step="app_token")

    header = blob[:_GCM_HEADER_SIZE]
    nonce = blob[_GCM_HEADER_SIZE : _GCM_HEADER_SIZE + _GCM_NONCE_SIZE]
    ciphertext = blob[_GCM_HEADER_SIZE + _GCM_NONCE_SIZE :]
    try:
        return AESGCM(sk).decrypt(nonce, ciphertext, header)
    except InvalidTag as e:
        raise DecryptionError("app token failed authentication", step="app_token") from e
