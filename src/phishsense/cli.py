"""CLI entry point for PhishSense."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from phishsense import __version__
from phishsense.combiner import ScoreCombiner, analysis_to_dict
from phishsense.config import load_config
from phishsense.exceptions import PhishSenseError
from phishsense.models import AnalysisConfig, EmailContent, Sensitivity
from phishsense.output import console, render_result
from phishsense.store import InMemorySenderStore, SQLiteSenderStore


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8", errors="replace")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phishsense",
        description="PhishSense - multi-engine phishing risk scoring for email",
    )
    parser.add_argument("--from", dest="sender", default="", help="Sender, e.g. 'Name <a@b.com>'")
    parser.add_argument("--subject", default="", help="Email subject line")
    body = parser.add_mutually_exclusive_group()
    body.add_argument("--body", default="", help="Email body text")
    body.add_argument("--body-file", default=None, help="Read the body from a file ('-' for stdin)")
    parser.add_argument("--headers-file", default=None, help="File holding the raw email headers")
    parser.add_argument("--user", default=None, help="User id for behavior history and trust")
    parser.add_argument(
        "-s", "--sensitivity",
        default=None,
        help="lenient, balanced or strict (aliases: low, medium, high)",
    )
    parser.add_argument("--ml", action="store_true", help="Enable the ML engine")
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to a config YAML file merged over the bundled defaults",
    )
    parser.add_argument(
        "--db",
        default=None,
        help="SQLite file for sender history (default: in-memory, discarded on exit)",
    )
    parser.add_argument(
        "--record",
        action="store_true",
        help="Record the verdict as an interaction with the sender",
    )
    parser.add_argument(
        "--trust",
        action="store_true",
        help="Confirm the sender as legitimate after analysis",
    )
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show low-severity findings and debug logging",
    )
    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and analyze one email."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args.config)
        sensitivity = Sensitivity.parse(
            args.sensitivity or (config.get("analysis") or {}).get("sensitivity")
        )
    except (PhishSenseError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    if args.no_color:
        console.no_color = True

    try:
        body = _read_text(args.body_file) if args.body_file else args.body
        headers = _read_text(args.headers_file) if args.headers_file else ""
    except OSError as e:
        print(f"Error reading input: {e}", file=sys.stderr)
        sys.exit(1)

    content = EmailContent(
        subject=args.subject,
        body=body,
        sender=args.sender,
        headers=headers,
        user_id=args.user,
    )

    store = SQLiteSenderStore(args.db) if args.db else InMemorySenderStore()
    combiner = ScoreCombiner(config, store=store)
    if args.ml:
        combiner.ml_engine.update_config(enabled=True)
    combiner.initialize()

    result = combiner.analyze(
        content,
        AnalysisConfig(
            enable_ml=args.ml or combiner.analysis_config.enable_ml,
            sensitivity=sensitivity,
        ),
    )

    if args.record:
        combiner.record_result(content, result)
    if args.trust:
        combiner.confirm_trusted(content, result)

    if args.json:
        print(json.dumps(analysis_to_dict(result), indent=2))
    else:
        render_result(result, sender=args.sender, subject=args.subject, verbose=args.verbose)


if __name__ == "__main__":
    main()
