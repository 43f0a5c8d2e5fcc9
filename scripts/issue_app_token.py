#!/usr/bin/env python3
"""Issue, inspect and revoke application tokens.

Usage:
    # Issue a token for a service:
    python scripts/issue_app_token.py issue --app healer

    # Show a token's wire representation (fails if expired or unknown):
    python scripts/issue_app_token.py show --token <value>

    # Revoke a token:
    python scripts/issue_app_token.py revoke --token <value>

Environment Variables:
    STORE_BACKEND: memory (default), postgres or redis
    DATABASE_URL / REDIS_URL: connection string for the chosen backend
    STATE_DIR: state directory for the memory backend (defaults to
        /tmp/tokenvault-cli so tokens survive between invocations)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def run(args: argparse.Namespace) -> str:
    """Execute one subcommand and return the text to print."""
    # Import here so env defaults set in main() are seen by the settings loader
    from tokenvault.logging import set_correlation_id
    from tokenvault.service.runtime import get_runtime

    set_correlation_id()
    runtime = get_runtime()
    if args.command == "issue":
        token = runtime.sessions.issue_app_token(args.app)
        return token.to_json()
    if args.command == "show":
        token = runtime.sessions.lookup(args.token)
        return token.to_json()
    runtime.sessions.revoke(args.token)
    return "revoked"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage application tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    issue = sub.add_parser("issue", help="Issue a new application token")
    issue.add_argument(
        "--app",
        default=os.environ.get("APP_NAME"),
        help="Application name (or set APP_NAME env var)",
    )

    for name, help_text in (("show", "Print a token"), ("revoke", "Revoke a token")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("--token", required=True, help="Token value")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "issue" and not args.app:
        print("Error: --app or APP_NAME environment variable required")
        return 1

    if os.environ.get("STORE_BACKEND", "memory") == "memory":
        os.environ.setdefault("STATE_DIR", "/tmp/tokenvault-cli")

    from tokenvault.service.errors import ServiceError
    from tokenvault.storage.errors import StoreUnavailableError

    try:
        print(run(args))
    except ServiceError as e:
        print(f"Error: {e.message}")
        return 1
    except StoreUnavailableError as e:
        print(f"Error: store unavailable: {e.message}")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
