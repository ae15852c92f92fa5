#!/usr/bin/env python3
"""
plumesign -- Apple developer account tooling: sign in, pick a team, manage
development certificates.

Usage:
  python main.py teams -u you@example.com
  python main.py certificate list -u you@example.com
  python main.py certificate list -u you@example.com -t TEAMID1234
  python main.py certificate revoke -u you@example.com -s 1A2B3C4D5E6F
  python main.py anisette

Environment variables:
  ANISETTE_URL   Anisette server to fetch device-identity headers from.
  CONFIG_DIR     Where identity state and anisette libraries are kept.
  LOG_LEVEL      Logging level (default: INFO).
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from anisette.data import AnisetteConfig, anisette_headers
from core.config import get_settings
from core.errors import (
    AuthProofError,
    AuthServerError,
    DecryptionError,
    ParseError,
    PlumeError,
    SecondFactorError,
    TransportError,
    ValidationError,
)
from core.models import Team
from developer.session import AuthenticatedSession, authenticate

logger = logging.getLogger("plumesign.cli")


def _prompt_code(method: str) -> str:
    where = "your trusted device" if method == "trusted_device" else "your phone (SMS)"
    return input(f"  Enter the verification code sent to {where}: ")


def _choose_team(teams: list[Team]) -> str:
    print("  Multiple teams found:")
    for i, team in enumerate(teams):
        print(f"    [{i}] {team.name or 'Unknown'} ({team.team_id})")
    while True:
        raw = input("  Select team number: ").strip()
        if raw.isdigit() and int(raw) < len(teams):
            return teams[int(raw)].team_id
        print("  [!] Invalid choice")


def _login(username: Optional[str]) -> AuthenticatedSession:
    if not username:
        username = input("  Apple ID: ").strip()
    password = getpass.getpass("  Password: ")
    return authenticate(username, password, _prompt_code)


def _describe(error: PlumeError) -> str:
    """One line that says which kind of failure happened."""
    if isinstance(error, AuthProofError):
        return f"Incorrect Apple ID or password. {error}"
    if isinstance(error, SecondFactorError):
        return f"The verification code was rejected. {error}"
    if isinstance(error, TransportError):
        return f"Could not reach the server. {error}"
    if isinstance(error, AuthServerError):
        return f"The server refused the request. {error}"
    if isinstance(error, (ParseError, DecryptionError)):
        return f"The server sent a response that could not be read. {error}"
    if isinstance(error, ValidationError):
        return str(error)
    return f"Unexpected error. {error}"


def cmd_teams(args: argparse.Namespace) -> None:
    with _login(args.username) as session:
        teams = session.list_teams()
    print(f"\n  {len(teams)} team(s):")
    for team in teams:
        print(f"    {team.team_id}  {team.name}  {team.type}")


def cmd_certificate_list(args: argparse.Namespace) -> None:
    with _login(args.username) as session:
        team_id = session.resolve_team(args.team, _choose_team)
        certificates = session.list_certificates(team_id)

    print(f"\n  You have {len(certificates)} certificates registered.")
    for cert in certificates:
        expires = cert.expiration_date.isoformat() if cert.expiration_date else "unknown"
        print(
            f"    - `{cert.name}` with the serial number `{cert.serial_number}`, "
            f"expires `{expires}`, from the machine named `{cert.machine_name or ''}`."
        )


def cmd_certificate_revoke(args: argparse.Namespace) -> None:
    with _login(args.username) as session:
        team_id = session.resolve_team(args.team, _choose_team)
        result = session.revoke_certificate(team_id, args.serial_number)
    print(f"\n  Revoke response: {result.message}")


def cmd_anisette(args: argparse.Namespace) -> None:
    settings = get_settings()
    settings.ensure_config_dir()
    headers = anisette_headers(AnisetteConfig.from_settings(settings))
    width = max((len(k) for k in headers), default=0)
    for key in sorted(headers):
        print(f"  {key.ljust(width)}  {headers[key]}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="plumesign",
        description="Apple developer account and certificate management.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py teams -u you@example.com
  python main.py certificate list -u you@example.com -t TEAMID1234
  python main.py certificate revoke -u you@example.com -s 1A2B3C4D5E6F
  python main.py anisette
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    account = argparse.ArgumentParser(add_help=False)
    account.add_argument("-u", "--username", metavar="EMAIL", help="Apple ID to sign in with (prompted if omitted)")

    team = argparse.ArgumentParser(add_help=False)
    team.add_argument("-t", "--team", metavar="TEAM_ID", help="Team ID (prompted if the account has several)")

    teams_cmd = sub.add_parser("teams", parents=[account], help="List the development teams of an account")
    teams_cmd.set_defaults(func=cmd_teams)

    cert = sub.add_parser("certificate", help="Certificate management (list / revoke)")
    cert_sub = cert.add_subparsers(dest="certificate_command", metavar="ACTION")

    cert_list = cert_sub.add_parser("list", parents=[account, team], help="List certificates for a team")
    cert_list.set_defaults(func=cmd_certificate_list)

    cert_revoke = cert_sub.add_parser("revoke", parents=[account, team], help="Revoke a certificate by serial number")
    cert_revoke.add_argument(
        "-s",
        "--serial-number",
        required=True,
        metavar="SERIAL",
        help="Serial number of the certificate to revoke",
    )
    cert_revoke.set_defaults(func=cmd_certificate_revoke)

    ani = sub.add_parser("anisette", help="Print the current anisette headers (diagnostics)")
    ani.set_defaults(func=cmd_anisette)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    try:
        args.func(args)
    except PlumeError as e:
        print(f"  [!] {_describe(e)}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n  [!] Aborted.", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
