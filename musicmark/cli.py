"""
musicmark: command line entry point.

Usage:
    musicmark serve [--host 127.0.0.1] [--port 3000]
    musicmark reset-admin [--username admin] [--password secret]

``reset-admin`` resets the password of an existing user, or creates the user
as an admin when it does not exist yet. Defaults come from ADMIN_USERNAME /
ADMIN_PASSWORD.
"""

from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from loguru import logger

from .config import Settings, configure_logging
from .errors import MusicMarkError, ValidationError
from .service import MusicMark

GREEN = "\033[0;32m"
RED   = "\033[0;31m"
NC    = "\033[0m"


def _build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="musicmark", description="MusicMark listen store")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the JSON API")
    serve.add_argument("--host", default=settings.host)
    serve.add_argument("--port", type=int, default=settings.port)

    reset = sub.add_parser("reset-admin", help="Reset (or create) an admin password")
    reset.add_argument("--username", default=settings.admin_username)
    reset.add_argument("--password", default=settings.admin_password)
    return parser


def _serve(settings: Settings, host: str, port: int) -> int:
    import uvicorn

    from .app import create_app

    logger.info(f"Starting {settings.site_name} on http://{host}:{port}")
    uvicorn.run(create_app(settings), host=host, port=port, reload=False)
    return 0


def _reset_admin(settings: Settings, username: str, password: str) -> int:
    mm = MusicMark(settings)
    mm.open(seed_admin=False)
    try:
        user_id, created = mm.reset_admin(username, password)
    except ValidationError as exc:
        print(f"{RED}{exc}. Pass a new password with --password=...{NC}", file=sys.stderr)
        return 2
    finally:
        mm.close()
    if created:
        print(f"{GREEN}Created admin {username!r} (id={user_id}). Log in and change the password soon.{NC}")
    else:
        print(f"{GREEN}Password reset for {username!r} (id={user_id}).{NC}")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    args = _build_parser(settings).parse_args(argv)

    try:
        if args.command == "serve":
            return _serve(settings, args.host, args.port)
        return _reset_admin(settings, args.username, args.password)
    except MusicMarkError as exc:
        logger.error(f"{args.command} failed: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
