"""
developer/session.py -- Authenticated developer-services session.

authenticate() is the single entry point the CLI uses: it builds the anisette
snapshot, runs the GSA login (two-factor included), exchanges it for the
developer-services app token and returns an AuthenticatedSession. A session
exists only after every one of those steps succeeded.

Every session request carries:
  - X-Apple-I-Identity-Id / X-Apple-GS-Token from the login,
  - the anisette headers from AnisetteHolder.current(), which refreshes the
    snapshot first when it is older than 60s, so no request ever goes out
    with headers older than 90s.

revoke_certificate() checks the serial against the current listing before
sending anything; revoking an unknown serial is a client-side ValidationError.
"""

from __future__ import annotations

import logging
import plistlib
import uuid
from dataclasses import replace
from typing import Any, Callable, Optional

from anisette.data import AnisetteConfig, AnisetteData, AnisetteHolder, HeaderProvider
from anisette.provider import RemoteAnisetteProvider
from auth.envelope import decode_services
from auth.srp import GsaAuthenticator, OtpPrompt
from core.config import Settings, get_settings
from core.errors import ParseError, ValidationError
from core.models import Certificate, Credential, GsaAccount, RevokeResult, Team
from core.transport import ProviderTransport

logger = logging.getLogger("plumesign.session")

SERVICES_PROTOCOL = "QH65B2"
CLIENT_ID = "XABBG36SBA"

TeamChooser = Callable[[list[Team]], str]


class AuthenticatedSession:
    def __init__(
        self,
        account: GsaAccount,
        app_token: str,
        anisette: AnisetteHolder,
        transport: ProviderTransport,
        settings: Optional[Settings] = None,
    ) -> None:
        self._account: Optional[GsaAccount] = account
        self._app_token: Optional[str] = app_token
        self.anisette = anisette
        self.transport = transport
        self.settings = settings or get_settings()
        self.team_id: Optional[str] = None

    @property
    def account(self) -> GsaAccount:
        if self._account is None:
            raise ValidationError("session has been logged out", step="services")
        return self._account

    @property
    def active(self) -> bool:
        return self._account is not None

    def logout(self) -> None:
        """Drop the login state. The session is unusable afterwards."""
        self._account = None
        self._app_token = None
        self.team_id = None

    def close(self) -> None:
        """Log out and release the anisette provider and the transport."""
        self.logout()
        close_provider = getattr(self.anisette.data.provider, "close", None)
        if close_provider is not None:
            close_provider()
        self.transport.close()

    def __enter__(self) -> "AuthenticatedSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        account = self.account
        headers = {
            "Content-Type": "text/x-xml-plist",
            "Accept": "text/x-xml-plist",
            "Accept-Language": "en-us",
            "User-Agent": "Xcode",
            "X-Apple-I-Identity-Id": account.adsid,
            "X-Apple-GS-Token": self._app_token or "",
        }
        headers.update(self.anisette.current().generate_headers(client_info=True, app_info=True))
        return headers

    def _request(self, action: str, params: Optional[dict[str, Any]] = None, platform: Optional[str] = "ios") -> dict:
        headers = self._headers()
        body = {
            "clientId": CLIENT_ID,
            "protocolVersion": SERVICES_PROTOCOL,
            "requestId": str(uuid.uuid4()).upper(),
            "userLocale": ["en_US"],
        }
        if params:
            body.update(params)

        path = f"{platform}/{action}" if platform else action
        url = f"{self.settings.services_url}/{SERVICES_PROTOCOL}/{path}?clientId={CLIENT_ID}"
        resp = self.transport.post(
            url,
            data=plistlib.dumps(body, fmt=plistlib.FMT_XML),
            headers=headers,
            step="services",
        )
        return decode_services(resp).raise_for_error(step="services")

    # ------------------------------------------------------------------
    # Teams
    # ------------------------------------------------------------------

    def list_teams(self) -> list[Team]:
        payload = self._request("listTeams.action", platform=None)
        teams = payload.get("teams", [])
        if not isinstance(teams, list):
            raise ParseError('"teams" is not a list', step="services")
        return [
            Team(
                team_id=str(t["teamId"]),
                name=str(t.get("name", "")),
                type=str(t.get("type", "")),
                status=str(t.get("status", "")),
            )
            for t in teams
            if isinstance(t, dict) and t.get("teamId")
        ]

    def resolve_team(self, explicit_id: Optional[str] = None, chooser: Optional[TeamChooser] = None) -> str:
        """Return the team to operate on.

        An explicit id is returned verbatim without a request. Otherwise the
        account's teams are listed: one team is used directly, several
        require chooser(teams), none is an error.
        """
        if explicit_id:
            self.team_id = explicit_id
            return explicit_id

        teams = self.list_teams()
        if not teams:
            raise ValidationError("no development teams found for this account", step="services")
        if len(teams) == 1:
            self.team_id = teams[0].team_id
            return self.team_id
        if chooser is None:
            raise ValidationError(
                f"account belongs to {len(teams)} teams; pass a team id explicitly", step="services"
            )

        chosen = chooser(teams)
        if chosen not in {t.team_id for t in teams}:
            raise ValidationError(f"team {chosen!r} is not one of this account's teams", step="services")
        self.team_id = chosen
        return chosen

    # ------------------------------------------------------------------
    # Certificates
    # ------------------------------------------------------------------

    def list_certificates(self, team_id: str) -> list[Certificate]:
        if not team_id:
            raise ValidationError("a team id is required", step="services")
        payload = self._request("listAllDevelopmentCerts.action", {"teamId": team_id})
        certs = payload.get("certificates", [])
        if not isinstance(certs, list):
            raise ParseError('"certificates" is not a list', step="services")
        return [_certificate_from_record(c) for c in certs if isinstance(c, dict)]

    def revoke_certificate(self, team_id: str, serial_number: str) -> RevokeResult:
        """Revoke a certificate that is present in the current listing."""
        certificates = self.list_certificates(team_id)
        if not any(c.serial_number == serial_number for c in certificates):
            raise ValidationError(f"no certificate with serial number {serial_number!r}", step="services")

        logger.info("Revoking certificate with serial number: %s", serial_number)
        payload = self._request(
            "revokeDevelopmentCert.action",
            {"teamId": team_id, "serialNumber": serial_number},
        )
        return RevokeResult(
            serial_number=serial_number,
            result_string=payload.get("resultString"),
            user_string=payload.get("userString"),
        )


def _certificate_from_record(record: dict[str, Any]) -> Certificate:
    serial = record.get("serialNumber")
    if not serial:
        raise ParseError("certificate record has no serialNumber", step="services")
    return Certificate(
        name=str(record.get("name", "")),
        serial_number=str(serial),
        expiration_date=record.get("expirationDate"),
        machine_name=record.get("machineName"),
        certificate_id=record.get("certificateId"),
        status=record.get("status"),
    )


def authenticate(
    username: str,
    password: str,
    otp_prompt: Optional[OtpPrompt] = None,
    *,
    settings: Optional[Settings] = None,
    transport: Optional[ProviderTransport] = None,
    provider: Optional[HeaderProvider] = None,
) -> AuthenticatedSession:
    """Log in and return a ready-to-use session.

    Raises AuthProofError, SecondFactorError, AuthServerError, TransportError,
    ParseError, DecryptionError or ValidationError; never returns a
    half-authenticated session.
    """
    settings = settings or get_settings()
    transport = transport or ProviderTransport(timeout=settings.request_timeout)
    config = AnisetteConfig.from_settings(settings)
    remote: Optional[RemoteAnisetteProvider] = None
    if provider is None:
        settings.ensure_config_dir()
        provider = remote = RemoteAnisetteProvider.from_config(config)

    try:
        holder = AnisetteHolder(AnisetteData.new(config, provider))
        authenticator = GsaAuthenticator(transport, holder, settings)
        account = authenticator.login(Credential(username, password), otp_prompt)
        app_token = authenticator.fetch_app_token(account)
    except BaseException:
        if remote is not None:
            remote.close()
        raise

    logger.info("Developer session ready for %s", username)
    # sk and cookie only serve the app-token exchange above.
    return AuthenticatedSession(replace(account, sk=None, cookie=None), app_token, holder, transport, settings)
