"""
Command-line entry point.

    python -m xreadonly open [URL]          browse the site in read-only mode
    python -m xreadonly classify METHOD URL check what the network layer does with a request
    python -m xreadonly script [--css]      print the in-page enforcer (or its stylesheet)
    python -m xreadonly serve [--port N]    serve the compiled policy to an extension
"""

import sys
import asyncio
import logging
import argparse

from dataclasses import replace

from xreadonly.config import Settings
from xreadonly.enforcer.enforcer import with_control_taxonomy
from xreadonly.enforcer.script import build_content_script, build_stylesheet
from xreadonly.interface.browser import ReadOnlyBrowser
from xreadonly.interface.server import PolicyServer
from xreadonly.policy.classifier import RequestClassifier
from xreadonly.policy.table import PolicyTable, InvalidPolicyTableError

logger = logging.getLogger("xreadonly")


def load_table(settings: Settings) -> PolicyTable:
    """
    The request rules are required. The control taxonomy is not: without it the DOM layer
    is disabled and the error is reported.
    """
    table = PolicyTable.load(settings.requests_path, controls_path=None)
    return with_control_taxonomy(table, settings.controls_path, report_error=_report_error)


def _report_error(error: Exception) -> None:
    print(f"WARNING: {error}", file=sys.stderr)


async def run_browser(settings: Settings, table: PolicyTable, url: str | None, serve: bool) -> None:
    if serve:
        PolicyServer(table, settings.server_port).start()
    browser = ReadOnlyBrowser(settings, table)
    await browser.start(url)
    try:
        await browser.context.wait_for_event("close", timeout=0)
    finally:
        await browser.close()


def cmd_open(args: argparse.Namespace, settings: Settings, table: PolicyTable) -> int:
    try:
        asyncio.run(run_browser(settings, table, args.url, args.serve))
    except KeyboardInterrupt:
        print("\nExiting.")
    return 0


def cmd_classify(args: argparse.Namespace, settings: Settings, table: PolicyTable) -> int:
    classification = RequestClassifier(table, verbose=settings.debug).classify(args.method, args.url)
    if classification.blocked:
        print(f"BLOCK {classification.rule} ({classification.kind})")
    else:
        print("ALLOW")
    return 0


def cmd_script(args: argparse.Namespace, settings: Settings, table: PolicyTable) -> int:
    print(build_stylesheet(table) if args.css else build_content_script(table))
    return 0


def cmd_serve(args: argparse.Namespace, settings: Settings, table: PolicyTable) -> int:
    PolicyServer(table, args.port or settings.server_port).run()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="xreadonly", description="Read-only X/Twitter web client")
    parser.add_argument("--debug", action="store_true", help="verbose logging (also XREADONLY_DEBUG)")
    parser.add_argument("--env-file", default=None, help="path to a .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    p_open = sub.add_parser("open", help="browse the site in read-only mode")
    p_open.add_argument("url", nargs="?", default=None, help="deep link on x.com or twitter.com")
    p_open.add_argument("--headless", action="store_true")
    p_open.add_argument("--serve", action="store_true", help="also run the policy server")
    p_open.set_defaults(func=cmd_open)

    p_classify = sub.add_parser("classify", help="classify a single request")
    p_classify.add_argument("method")
    p_classify.add_argument("url")
    p_classify.set_defaults(func=cmd_classify)

    p_script = sub.add_parser("script", help="print the injected content script")
    p_script.add_argument("--css", action="store_true", help="print the stylesheet instead")
    p_script.set_defaults(func=cmd_script)

    p_serve = sub.add_parser("serve", help="serve the compiled policy to a browser extension")
    p_serve.add_argument("--port", type=int, default=None)
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env(args.env_file)
    if args.debug or getattr(args, "headless", False):
        settings = replace(
            settings,
            debug=settings.debug or args.debug,
            headless=settings.headless or getattr(args, "headless", False),
        )

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        table = load_table(settings)
    except InvalidPolicyTableError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    logger.debug(f"Policy table {table.version}: {len(table.operations)} operations, "
                 f"{len(table.path_patterns)} REST patterns, {len(table.controls)} controls")
    return args.func(args, settings, table)


if __name__ == "__main__":
    sys.exit(main())
