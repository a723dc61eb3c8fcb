"""
Admin command line.

    orgauth init-db
    orgauth create-owner --email a@x.com --password ... --name Ada [--org "Ada's shop"]
    orgauth issue-invite --email a@x.com --password ... [--role staff] [--target-email b@x.com]

Runs against the SQL document store configured by ``ORGAUTH_DATABASE_URL``.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from orgauth.core.config import Settings, get_settings
from orgauth.core.credentials import LocalCredentialProvider
from orgauth.core.database import SqlDocumentStore
from orgauth.core.errors import OrgAuthError
from orgauth.core.logging_config import configure_logging
from orgauth.services.session import SessionFacade

log = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="orgauth", description="Identity core administration")
    parser.add_argument("--database-url", help="Override ORGAUTH_DATABASE_URL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the document table")

    owner = sub.add_parser("create-owner", help="Sign up an owner with a new organization")
    owner.add_argument("--email", required=True)
    owner.add_argument("--password", required=True)
    owner.add_argument("--name", required=True, help="Display name")
    owner.add_argument("--org", default=None, help="Organization name")

    invite = sub.add_parser("issue-invite", help="Sign in as a team manager and print an invite code")
    invite.add_argument("--email", required=True)
    invite.add_argument("--password", required=True)
    invite.add_argument("--role", default="staff")
    invite.add_argument("--target-email", default=None)
    return parser


async def _run(args: argparse.Namespace, settings: Settings) -> str:
    store = SqlDocumentStore(args.database_url, settings=settings)
    await store.open()
    try:
        if args.command == "init-db":
            return "database ready"

        credentials = LocalCredentialProvider(store, settings=settings)
        async with SessionFacade(store, credentials, settings=settings) as facade:
            if args.command == "create-owner":
                profile = await facade.signup_as_owner(args.email, args.password, args.name, args.org)
                return f"created {profile.subject_id} owning {profile.active_organization_id}"

            await facade.login(args.email, args.password)
            session = await facade.settle(timeout=settings.profile_wait_timeout_seconds)
            if session is None:
                notice = facade.notice
                raise OrgAuthError(notice.message if notice else "No active session")
            invite = await facade.team.invite_member(args.role, args.target_email)
            return f"{invite.code} (expires {invite.expires_at:%Y-%m-%d})"
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    try:
        output = asyncio.run(_run(args, settings))
    except OrgAuthError as exc:
        log.error("cli.failed", command=args.command, code=exc.code)
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
