"""
auth/envelope.py -- Decode provider responses into one normalized result.

GSA answers with an XML plist shaped like

    {"Response": {"Status": {"ec": 0, "em": "", ...}, ...payload...}}

but the error record is sometimes at the top of "Response" instead of under
"Status", some endpoints (2FA validate) drop the "Response" wrapper, and
developer services use resultCode/userString instead of ec/em. All of those
are normalized here into ServerEnvelope so callers have one error path.

On a non-2xx status the body is frequently an HTML error page rather than a
plist. decode() never crashes on it: it synthesizes an error record whose
message is the page <title> when one can be found.

Business errors are returned inside the envelope, never raised by decode*().
Call ServerEnvelope.raise_for_error() where an error should stop the flow.
"""

from __future__ import annotations

import logging
import plistlib
from dataclasses import dataclass, field
from typing import Any, Optional
from xml.parsers.expat import ExpatError

import requests

from core.errors import AuthServerError, ParseError

logger = logging.getLogger("plumesign.envelope")

RISK_CONTROL_MESSAGE = "Possibly triggered Apple's risk control."


@dataclass
class ServerEnvelope:
    payload: dict[str, Any] = field(default_factory=dict)
    error: Optional[AuthServerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def status(self) -> dict[str, Any]:
        """The nested Status record, or an empty dict when absent."""
        status = self.payload.get("Status")
        return status if isinstance(status, dict) else {}

    def raise_for_error(self, step: Optional[str] = None) -> dict[str, Any]:
        """Raise the carried error (tagged with step), else return the payload."""
        if self.error is not None:
            if step and self.error.step is None:
                self.error.step = step
            raise self.error
        return self.payload


# ---------------------------------------------------------------------------
# Error-page heuristics
# ---------------------------------------------------------------------------


def extract_title(body: str) -> Optional[str]:
    """Return the trimmed text of the first <title ...>...</title>, or None.

    The opening tag match is case-sensitive and may carry attributes; the
    title text runs from the first '>' after it to the next '</title>'.
    """
    start = body.find("<title")
    if start == -1:
        return None
    gt = body.find(">", start)
    if gt == -1:
        return None
    content_start = gt + 1
    end = body.find("</title>", content_start)
    if end == -1:
        return None
    title = body[content_start:end].strip()
    return title or None


def error_from_status(status_code: int, body: str) -> AuthServerError:
    title = extract_title(body)
    message = f"{title}. {RISK_CONTROL_MESSAGE}" if title else RISK_CONTROL_MESSAGE
    return AuthServerError(status_code, message)


# ---------------------------------------------------------------------------
# Error-code normalization
# ---------------------------------------------------------------------------


def _as_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ParseError(f"{field_name} is a boolean, expected an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ParseError(f"{field_name} is not an integer: {value!r}")


def check_error(record: dict[str, Any]) -> Optional[AuthServerError]:
    """Return the error carried by a GSA record, or None on success.

    The nested "Status" record wins when present; otherwise the top level is
    used. A missing "ec" means success.
    """
    status = record.get("Status")
    source = status if isinstance(status, dict) else record
    if "ec" not in source:
        return None
    code = _as_int(source["ec"], "ec")
    if code == 0:
        return None
    message = source.get("em")
    return AuthServerError(code, str(message) if message is not None else "Unknown error")


def check_services_error(record: dict[str, Any]) -> Optional[AuthServerError]:
    """Developer-services flavour: resultCode plus userString/resultString."""
    if "resultCode" not in record:
        return None
    code = _as_int(record["resultCode"], "resultCode")
    if code == 0:
        return None
    message = record.get("userString") or record.get("resultString") or "Unknown error"
    return AuthServerError(code, str(message))


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------


def load_plist(data: bytes) -> Any:
    """Parse a plist, tolerating a bare <dict>...</dict> without the XML prologue."""
    try:
        return plistlib.loads(data)
    except (plistlib.InvalidFileException, ExpatError, ValueError, TypeError):
        pass
    stripped = data.strip(b"\x00").strip()
    if stripped.startswith(b"<dict>"):
        wrapped = (
            b'<?xml version="1.0" encoding="UTF-8"?>\n'
            b'<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" '
            b'"http://www.apple.com/DTDs/PropertyList-1.0.dtd">\n'
            b'<plist version="1.0">\n' + stripped + b"\n</plist>"
        )
        try:
            return plistlib.loads(wrapped)
        except (plistlib.InvalidFileException, ExpatError, ValueError, TypeError) as e:
            raise ParseError(f"malformed plist: {e}") from e
    raise ParseError(f"response is not a plist (first bytes: {data[:32]!r})")


def _load_dict(response: requests.Response) -> dict[str, Any]:
    parsed = load_plist(response.content)
    if not isinstance(parsed, dict):
        raise ParseError(f"expected a plist dictionary, got {type(parsed).__name__}")
    return parsed


def _is_success(response: requests.Response) -> bool:
    return 200 <= response.status_code < 300


def decode(response: requests.Response) -> ServerEnvelope:
    """Decode a wrapped GSA response ({"Response": {...}})."""
    if not _is_success(response):
        logger.debug("Provider returned HTTP %d", response.status_code)
        return ServerEnvelope(error=error_from_status(response.status_code, response.text))

    parsed = _load_dict(response)
    inner = parsed.get("Response")
    if inner is None:
        raise ParseError('response plist has no "Response" key')
    if not isinstance(inner, dict):
        raise ParseError('"Response" is not a dictionary')
    return ServerEnvelope(payload=inner, error=check_error(inner))


def decode_unwrapped(response: requests.Response) -> ServerEnvelope:
    """Decode a GSA response whose plist has no "Response" wrapper."""
    if not _is_success(response):
        return ServerEnvelope(error=error_from_status(response.status_code, response.text))
    if not response.content.strip():
        return ServerEnvelope()
    parsed = _load_dict(response)
    return ServerEnvelope(payload=parsed, error=check_error(parsed))


def decode_services(response: requests.Response) -> ServerEnvelope:
    """Decode a developer-services response."""
    if not _is_success(response):
        return ServerEnvelope(error=error_from_status(response.status_code, response.text))
    parsed = _load_dict(response)
    return ServerEnvelope(payload=parsed, error=check_services_error(parsed))
