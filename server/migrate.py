from __future__ import annotations

import argparse

from dotenv import load_dotenv

from server.creditmeter.core.cli import add_runtime_args, apply_runtime_overrides
from server.creditmeter.core.config import Settings
from server.creditmeter.core.migrations import (
    assert_db_current,
    create_revision,
    current_heads,
    downgrade_to,
    expected_heads,
    revision_state,
    stamp_head,
    upgrade_to_head,
)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ledger database migration helper.")
    add_runtime_args(parser)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("upgrade", help="Apply all pending migrations.")
    sub.add_parser("check", help="Exit 0 when the ledger DB is at the migration head.")
    sub.add_parser("current", help="Print the applied DB revision head(s).")
    sub.add_parser("heads", help="Print the migration head(s) shipped with the code.")
    sub.add_parser("stamp-head", help="Mark the DB as current without running migrations.")

    down = sub.add_parser("downgrade", help="Revert to an earlier revision.")
    down.add_argument("revision", help="Target revision id, or 'base'.")

    rev = sub.add_parser("revision", help="Create a new migration revision.")
    rev.add_argument("-m", "--message", required=True, help="Revision message.")
    rev.add_argument(
        "--no-autogenerate",
        action="store_true",
        help="Create an empty revision instead of diffing the models.",
    )

    return parser


def _format_heads(heads: tuple[str, ...]) -> str:
    return ",".join(heads) if heads else "none"


def main() -> int:
    load_dotenv()
    args = _parser().parse_args()
    apply_runtime_overrides(args)
    settings = Settings.from_env()

    if args.command == "upgrade":
        upgrade_to_head(settings)
        print("ok: upgraded to", _format_heads(expected_heads(settings)))
        return 0

    if args.command == "check":
        try:
            assert_db_current(settings)
        except RuntimeError as exc:
            print(f"pending: {exc}")
            return 1
        except Exception as exc:
            print(f"error: {exc}")
            return 2
        print("ok: at head")
        return 0

    if args.command == "current":
        print(_format_heads(current_heads(settings)))
        return 0

    if args.command == "heads":
        print(_format_heads(expected_heads(settings)))
        return 0

    if args.command == "stamp-head":
        stamp_head(settings)
        print("ok: stamped", _format_heads(revision_state(settings).expected_heads))
        return 0

    if args.command == "downgrade":
        downgrade_to(settings, revision=args.revision)
        print("ok: now at", _format_heads(current_heads(settings)))
        return 0

    if args.command == "revision":
        create_revision(settings, message=args.message, autogenerate=not args.no_autogenerate)
        print("ok: revision created")
        return 0

    print(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
