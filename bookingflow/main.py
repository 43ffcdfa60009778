from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .browser import BrowserSessionConfig
from .config import HarnessSettings, load_env, parse_bool
from .errors import FlowDefinitionError, LaunchError, NavigationError
from .flows import FLOW_BUILDERS, get_flow
from .loader import load_flow_file
from .models import RunStatus
from .preflight import check_reachable
from .reporter import Reporter, format_summary_table, summarize, write_report
from .runner import Flow, run_flow

logger = logging.getLogger("bookingflow")


def _bool_arg(value: str) -> bool:
    try:
        return parse_bool(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="run-flow",
        description="Drive the booking site through a named flow and report every step.",
    )
    parser.add_argument("--flow", help="name of a built-in flow (see --list)")
    parser.add_argument("--flow-file", type=Path, help="JSON or YAML flow definition")
    parser.add_argument("--headless", type=_bool_arg, default=None, metavar="BOOL", help="override HEADLESS")
    parser.add_argument("--base-url", help="site under test (default: TARGET_BASE_URL)")
    parser.add_argument(
        "--continue-on-failure",
        action="store_true",
        help="keep executing steps after a failure (diagnostic runs)",
    )
    parser.add_argument("--max-flow-retries", type=int, default=0, help="re-run a failed flow N times")
    parser.add_argument("--deadline-ms", type=int, default=None, help="abort the whole run after N ms")
    parser.add_argument("--report-dir", type=Path, default=None, help="where to write the JSON report")
    parser.add_argument("--skip-preflight", action="store_true", help="do not probe the base URL first")
    parser.add_argument("--list", action="store_true", help="list built-in flows and exit")
    parser.add_argument("--log-level", default=None, help="logging level (default: LOG_LEVEL or INFO)")
    return parser


async def execute(
    args: argparse.Namespace,
    flow: Flow,
    settings: HarnessSettings,
    config: BrowserSessionConfig,
) -> int:
    base_url = args.base_url or settings.base_url
    if not args.skip_preflight:
        try:
            await check_reachable(base_url)
        except NavigationError as exc:
            print(f"FAIL preflight: {exc}")
            return 1

    reporter = Reporter(settings.screenshot_dir)
    try:
        run = await run_flow(
            flow,
            config,
            base_url=base_url,
            reporter=reporter,
            continue_on_failure=args.continue_on_failure,
            max_flow_retries=args.max_flow_retries,
            deadline_ms=args.deadline_ms,
        )
    except LaunchError as exc:
        logger.error("Browser launch failed: %s", exc)
        print(f"FAIL launch: {exc}")
        return 1

    write_report(run, args.report_dir or settings.report_dir)
    print()
    print(format_summary_table(summarize(run), run.steps))
    return 0 if run.status is RunStatus.PASSED else 1


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = HarnessSettings.from_env()
        config = settings.session_config(headless=args.headless)
    except ValueError as exc:
        parser.error(f"invalid environment setting: {exc}")

    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.list:
        for name in sorted(FLOW_BUILDERS):
            flow = get_flow(name)
            print(f"{name:16} {len(flow)} steps  {flow.description}")
        return 0
    if args.max_flow_retries < 0:
        parser.error("--max-flow-retries must be >= 0")
    if args.deadline_ms is not None and args.deadline_ms <= 0:
        parser.error("--deadline-ms must be > 0")

    try:
        if args.flow_file:
            flow = load_flow_file(args.flow_file)
        elif args.flow:
            flow = get_flow(args.flow)
        else:
            parser.error("one of --flow or --flow-file is required")
    except FlowDefinitionError as exc:
        parser.error(str(exc))

    return asyncio.run(execute(args, flow, settings, config))


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
