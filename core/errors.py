"""
core/errors.py -- Error taxonomy shared by every layer.

Every failure the account/session core can surface is one of these types.
Callers distinguish credential problems from transport problems from
provider-side rejections by type alone, never by parsing messages:

  TransportError      network/HTTP failure reaching the provider (retryable)
  ParseError          malformed or unexpected response shape
  AuthProofError      SRP proof mismatch -- wrong password
  AuthServerError     provider-reported business error (code + message)
  SecondFactorError   provider rejected the one-time code
  DecryptionError     auxiliary payload padding/format invalid
  StaleIdentityError  anisette headers requested from expired data
  ValidationError     client-side precondition failure

`step` names the handshake or request step that failed ("init", "complete",
"verify", "decrypt", "second_factor", "app_token", "services", ...). It is
informational and never contains secret material.

Layer rule: no imports from auth/, anisette/, or developer/.
"""

from __future__ import annotations


class PlumeError(Exception):
    """Base class for all errors raised by plumesign."""

    def __init__(self, message: str, step: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.step = step

    def __str__(self) -> str:
        if self.step:
            return f"{self.message} (step: {self.step})"
        return self.message


class TransportError(PlumeError):
    """The provider could not be reached or the connection failed mid-request."""


class ParseError(PlumeError):
    """The provider answered, but not in a shape we understand."""


class AuthProofError(PlumeError):
    """The SRP proof did not verify. The credential is wrong."""


class AuthServerError(PlumeError):
    """The provider reported a non-zero error code.

    code and message are the provider's own values, shown to the user verbatim.
    """

    def __init__(self, code: int, message: str, step: str | None = None) -> None:
        super().__init__(message, step=step)
        self.code = code

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.step:
            return f"{base} (step: {self.step})"
        return base

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AuthServerError):
            return NotImplemented
        return type(self) is type(other) and (self.code, self.message) == (other.code, other.message)

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.code, self.message))


class SecondFactorError(AuthServerError):
    """The one-time code was rejected (or never supplied)."""


class DecryptionError(PlumeError):
    """An encrypted payload could not be decrypted. Never carries partial plaintext."""


class StaleIdentityError(PlumeError):
    """Anisette headers were requested from data older than the validity window.

    This is a programming error: callers must check is_valid (or go through
    AnisetteHolder.current()) before generating headers.
    """


class ValidationError(PlumeError):
    """A client-side precondition failed before anything was sent."""
