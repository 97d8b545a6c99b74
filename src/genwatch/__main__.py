"""CLI entrypoint for genwatch."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from genwatch.cdp.browser import CdpBrowser
from genwatch.cdp.provider import PlaywrightSignalProvider
from genwatch.monitoring.monitor import ResponseMonitor
from genwatch.schemas import ResponsePhase
from genwatch.settings import (
    cdp_ports_from_env,
    load_dotenv_files,
    load_inspection_scripts,
    load_monitor_config,
)

logger = logging.getLogger(__name__)

load_dotenv_files()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TIMEOUT = 2
EXIT_QUOTA = 3


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser."""
    p = argparse.ArgumentParser(
        prog="genwatch",
        description="genwatch - detect when a remotely controlled assistant has finished answering.",
    )
    sub = p.add_subparsers(dest="command")

    def add_target_args(cmd: argparse.ArgumentParser) -> None:
        cmd.add_argument(
            "--scripts",
            required=True,
            help="YAML/JSON file with the inspection expressions.",
        )
        cmd.add_argument(
            "--port",
            type=int,
            action="append",
            default=[],
            help="CDP port to try (repeatable; default: GENWATCH_CDP_PORTS or 9222,9223,...).",
        )
        cmd.add_argument(
            "--frame",
            default="",
            help="Evaluate inside the first frame whose URL contains this keyword.",
        )

    watch_p = sub.add_parser("watch", help="Monitor one generation until it completes.")
    add_target_args(watch_p)
    watch_p.add_argument("--config", default="", help="YAML/JSON monitor settings file.")
    watch_p.add_argument(
        "--passive",
        action="store_true",
        help="Assume the target is already generating (attach mid-answer).",
    )
    watch_p.add_argument(
        "--quiet",
        action="store_true",
        help="Only print the final text.",
    )

    stop_p = sub.add_parser("stop", help="Click the target's stop control once.")
    add_target_args(stop_p)

    check_p = sub.add_parser("check-config", help="Print the effective configuration.")
    check_p.add_argument("--config", default="", help="YAML/JSON monitor settings file.")
    check_p.add_argument("--scripts", default="", help="Optional inspection scripts file.")

    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging.",
    )
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if args.command == "watch":
        return asyncio.run(_run_watch(args))
    if args.command == "stop":
        return asyncio.run(_run_stop(args))
    if args.command == "check-config":
        return _check_config(args)

    parser.print_help()
    print(
        "\nTip: run 'genwatch check-config --config <file>' to validate settings,\n"
        "     'genwatch watch --scripts <file>' to follow one generation.",
        file=sys.stderr,
    )
    return EXIT_ERROR


async def _run_watch(args: argparse.Namespace) -> int:
    """Attach to the target and block until the monitor reaches a terminal phase."""
    try:
        scripts = load_inspection_scripts(args.scripts)
        config = load_monitor_config(args.config or None)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    finished = asyncio.Event()
    final: dict[str, str] = {"text": ""}
    quiet = bool(getattr(args, "quiet", False))

    def on_progress(text: str) -> None:
        if not quiet:
            print(f"  ... {len(text)} chars", file=sys.stderr)

    def on_activity(entries: list[str]) -> None:
        if not quiet:
            for entry in entries:
                print(f"  > {entry.splitlines()[0][:120]}", file=sys.stderr)

    def on_phase_change(phase: ResponsePhase, _text: str | None) -> None:
        if not quiet:
            print(f"  [{phase.value}]", file=sys.stderr)

    def on_done(text: str) -> None:
        final["text"] = text
        finished.set()

    ports = tuple(args.port) or cdp_ports_from_env()
    try:
        async with CdpBrowser(ports=ports) as browser:
            provider = PlaywrightSignalProvider(browser.page, frame_keyword=args.frame)
            monitor = ResponseMonitor(
                provider,
                scripts,
                config,
                on_progress=on_progress,
                on_complete=on_done,
                on_timeout=on_done,
                on_phase_change=on_phase_change,
                on_activity=on_activity,
            )
            await monitor.start(passive=args.passive)
            try:
                await finished.wait()
            finally:
                monitor.stop()
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    print(final["text"])
    reason = monitor.completion_reason.value if monitor.completion_reason else "unknown"
    logger.info("Finished with phase=%s reason=%s", monitor.phase.value, reason)
    if monitor.phase == ResponsePhase.TIMEOUT:
        return EXIT_TIMEOUT
    if monitor.phase == ResponsePhase.QUOTA_REACHED:
        return EXIT_QUOTA
    return EXIT_OK


async def _run_stop(args: argparse.Namespace) -> int:
    """Activate the cancel control once and print the structured result."""
    try:
        scripts = load_inspection_scripts(args.scripts)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    ports = tuple(args.port) or cdp_ports_from_env()
    try:
        async with CdpBrowser(ports=ports) as browser:
            provider = PlaywrightSignalProvider(browser.page, frame_keyword=args.frame)
            monitor = ResponseMonitor(provider, scripts)
            result = await monitor.request_stop()
    except RuntimeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR

    print(json.dumps(result.model_dump(exclude_none=True)))
    return EXIT_OK if result.ok else EXIT_ERROR


def _check_config(args: argparse.Namespace) -> int:
    """Print the effective monitor configuration (and scripts summary) as JSON."""
    try:
        config = load_monitor_config(args.config or None)
        payload: dict[str, object] = {"monitor": config.model_dump(mode="json")}
        if args.scripts:
            scripts = load_inspection_scripts(args.scripts)
            payload["scripts"] = {
                name: len(value) for name, value in scripts.model_dump().items() if value
            }
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    payload["cdp_ports"] = list(cdp_ports_from_env())
    print(json.dumps(payload, indent=2, sort_keys=True))
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
