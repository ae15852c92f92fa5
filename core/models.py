"""
core/models.py -- Domain dataclasses shared by the auth and developer layers.

Pattern: Data class (pure data container, near-zero logic). Stores, clients
and the session facade do the work.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

# Application id the developer-services app token is issued for.
XCODE_APP_ID = "com.apple.gs.xcode.auth"


@dataclass(frozen=True)
class Credential:
    """Username + password for one handshake attempt. Never persisted."""

    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class GsaAccount:
    """Account metadata recovered from the decrypted server-provided data.

    sk (GSA session key) and cookie are needed for the app-token exchange;
    they are excluded from repr so an accidental log line cannot leak them.
    """

    username: str
    adsid: str
    idms_token: str = field(repr=False)
    sk: Optional[bytes] = field(default=None, repr=False)
    cookie: Optional[bytes] = field(default=None, repr=False)
    first_name: Optional[str] = None
    last_name: Optional[str] = None


@dataclass
class Team:
    team_id: str
    name: str = ""
    type: str = ""
    status: str = ""


@dataclass
class Certificate:
    name: str
    serial_number: str
    expiration_date: Optional[datetime] = None
    machine_name: Optional[str] = None
    certificate_id: Optional[str] = None
    status: Optional[str] = None


@dataclass
class RevokeResult:
    """Provider confirmation for a revoked certificate."""

    serial_number: str
    result_string: Optional[str] = None
    user_string: Optional[str] = None

    @property
    def message(self) -> str:
        return self.result_string or self.user_string or "Certificate revoke request completed (no message)."
