"""Main CLI entry point for Viewkeeper."""

from __future__ import annotations

import argparse
import sys

from viewkeeper.cli.commands import build_config, dead_letters, lag, publish, query, rebuild, run
from viewkeeper.deadletter import DeadLetterReason
from viewkeeper.errors import ViewkeeperError
from viewkeeper.store import ORDER_COLUMNS


def _add_connection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="YAML configuration file (default: $VIEWKEEPER_CONFIG)")
    parser.add_argument(
        "--db-url",
        help="View store URL (memory://, sqlite:///... or postgresql://...)",
    )
    parser.add_argument(
        "--stream-url",
        help="Stream, stash and dead-letter URL (sqlite:///...; default: --db-url)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="viewkeeper",
        description="Viewkeeper - event stream to materialized view projection engine",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # run command
    run_parser = subparsers.add_parser("run", help="Run the projection engine")
    _add_connection_args(run_parser)
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Catch up with the stream and exit instead of running until interrupted",
    )

    # publish command
    publish_parser = subparsers.add_parser("publish", help="Publish JSON-lines events to the stream")
    _add_connection_args(publish_parser)
    publish_parser.add_argument("file", help="JSON-lines file of event envelopes ('-' for stdin)")

    # lag command
    lag_parser = subparsers.add_parser("lag", help="Show per-partition consumer lag")
    _add_connection_args(lag_parser)

    # dead-letters command
    dl_parser = subparsers.add_parser("dead-letters", help="List or replay dead-lettered events")
    _add_connection_args(dl_parser)
    dl_parser.add_argument(
        "--reason",
        choices=[r.value for r in DeadLetterReason],
        help="Only list dead letters with this reason",
    )
    dl_parser.add_argument("--limit", type=int, default=20, help="Maximum entries to list (default: 20)")
    dl_parser.add_argument("--replay", type=int, metavar="ID", help="Republish a dead letter to the stream")

    # rebuild command
    rebuild_parser = subparsers.add_parser("rebuild", help="Truncate the view and replay the stream")
    _add_connection_args(rebuild_parser)
    rebuild_parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    # query command
    query_parser = subparsers.add_parser("query", help="Query view rows by status")
    _add_connection_args(query_parser)
    query_parser.add_argument("--status", help="Only rows with this status")
    query_parser.add_argument("--limit", type=int, default=20, help="Maximum rows (default: 20)")
    query_parser.add_argument(
        "--order-by",
        choices=ORDER_COLUMNS,
        default="updated_at",
        help="Sort column (default: updated_at)",
    )
    query_parser.add_argument("--asc", action="store_true", help="Sort ascending")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    try:
        config = build_config(args.config, args.db_url, args.stream_url)

        if args.command == "run":
            run(config, once=args.once)
        elif args.command == "publish":
            if args.file == "-":
                publish(config, sys.stdin)
            else:
                with open(args.file, encoding="utf-8") as source:
                    publish(config, source)
        elif args.command == "lag":
            lag(config)
        elif args.command == "dead-letters":
            dead_letters(config, args.reason, args.limit, args.replay)
        elif args.command == "rebuild":
            rebuild(config, assume_yes=args.yes)
        elif args.command == "query":
            query(config, args.status, args.limit, args.order_by, args.asc)
    except ViewkeeperError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
