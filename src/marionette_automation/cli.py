from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import DEFAULT_CONFIG, MarionetteConfig, load_config
from .errors import ConfigError
from .inventory import InventoryLoader, validate_limit
from .playbook import PlaybookLoader
from .runner import PlaybookRunner, target_hosts
from .secrets import RedactingFilter, SecretRedactor
from .types import ActionResult, RunReport, TaskStatus
from .variables import VariableResolver, parse_extra_vars

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_HOST_FAILED = 2
EXIT_INTERRUPTED = 130


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="marionette", description="Marionette provisioning runner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Apply a playbook to the inventory")
    run.add_argument("playbook", type=Path, help="Path to a playbook file (YAML or TOML)")
    run.add_argument(
        "-i",
        "--inventory",
        type=Path,
        help="Path to the inventory file (default from config)",
    )
    run.add_argument("-l", "--limit", help="Restrict the run to a group or host (comma separated)")
    run.add_argument(
        "--check",
        "--dry-run",
        dest="check",
        action="store_true",
        help="Report what would change without changing anything",
    )
    run.add_argument(
        "-e",
        "--extra-vars",
        action="append",
        default=[],
        metavar="KEY=VALUE|@FILE",
        help="Inject variables; may be repeated",
    )
    run.add_argument("-f", "--forks", type=int, help="Number of hosts handled in parallel")
    run.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to marionette config file (default: {DEFAULT_CONFIG})",
    )
    run.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str, redactor: Optional[SecretRedactor] = None) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(levelname)s %(name)s - %(message)s",
    )
    if redactor is not None:
        for handler in logging.getLogger().handlers:
            handler.addFilter(RedactingFilter(redactor))
    logging.getLogger("paramiko").setLevel(max(numeric, logging.WARNING))


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    redactor = SecretRedactor()
    configure_logging(args.log_level, redactor)

    try:
        runner = _prepare(args, redactor)
    except ConfigError as exc:
        print(colorize(f"Configuration error: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_CONFIG
    except KeyboardInterrupt:
        print(colorize("Interrupted", Ansi.RED), file=sys.stderr)
        return EXIT_INTERRUPTED

    try:
        report = runner.run()
    except Exception as exc:  # noqa: BLE001
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {redactor.redact(str(exc))}", Ansi.RED), file=sys.stderr)
        return EXIT_HOST_FAILED

    effective_level = logging.getLogger().getEffectiveLevel()
    summary = Summary()
    for result in report.results:
        summary.add(result)
        if not should_display_result(result, effective_level):
            continue
        print(format_result(result))

    for name, host_report in report.hosts.items():
        if host_report.error:
            print(colorize(f"{name}: {host_report.error}", Ansi.RED), file=sys.stderr)
    print(summary.render(report))

    return exit_code(report)


def _prepare(args: argparse.Namespace, redactor: SecretRedactor) -> PlaybookRunner:
    cfg = load_config(args.config)
    _apply_overrides(cfg, args)
    _apply_aws_env(cfg)

    inventory_path = args.inventory or cfg.inventory
    if inventory_path is None:
        raise ConfigError("no inventory given (use --inventory or set it in the config)")
    inventory = InventoryLoader().load(inventory_path)
    playbook = PlaybookLoader().load(args.playbook)
    validate_limit(inventory, args.limit)

    resolver = VariableResolver(playbook, inventory, cfg, extra_vars=parse_extra_vars(args.extra_vars))
    variables = resolver.resolve(target_hosts(playbook, inventory, args.limit))
    for values in variables.values():
        redactor.add(values.secret_values())

    return PlaybookRunner(
        playbook,
        inventory,
        variables,
        cfg,
        dry_run=args.check,
        limit=args.limit,
        redactor=redactor,
    )


def _apply_overrides(cfg: MarionetteConfig, args: argparse.Namespace) -> None:
    if args.forks is not None:
        if args.forks < 1:
            raise ConfigError("--forks must be at least 1")
        cfg.forks = args.forks


def exit_code(report: RunReport) -> int:
    if report.cancelled:
        return EXIT_INTERRUPTED
    if report.failed_hosts:
        return EXIT_HOST_FAILED
    return EXIT_OK


def format_result(result: ActionResult) -> str:
    status = result.status.value
    color: Optional[str] = Ansi.BLUE
    if result.failed:
        if result.tolerated:
            status = "failed (ignored)"
            color = Ansi.ORANGE
        else:
            color = Ansi.RED
    elif result.skipped:
        color = Ansi.YELLOW
    elif result.changed:
        color = Ansi.GREEN
    action = f"handler:{result.action}" if result.handler else result.action
    resource = f"[{result.resource}]" if result.resource else ""
    line = f"{result.host}::{action}{resource} {status} - {result.details}"
    return colorize(line, color)


def should_display_result(result: ActionResult, log_level: int) -> bool:
    if result.failed or result.changed:
        return True
    return log_level <= logging.DEBUG


def _apply_aws_env(cfg) -> None:
    if getattr(cfg, "aws_profile", None) and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile  # type: ignore[assignment]
    if getattr(cfg, "aws_region", None):
        if "AWS_REGION" not in os.environ:
            os.environ["AWS_REGION"] = cfg.aws_region  # type: ignore[assignment]
        if "AWS_DEFAULT_REGION" not in os.environ:
            os.environ["AWS_DEFAULT_REGION"] = cfg.aws_region  # type: ignore[assignment]


class Summary:
    def __init__(self) -> None:
        self.hosts: dict[str, dict[str, int]] = {}

    def add(self, result: ActionResult) -> None:
        counts = self.hosts.setdefault(result.host, {"ok": 0, "changed": 0, "failed": 0, "skipped": 0})
        status = result.status
        if status == TaskStatus.UNCHANGED:
            counts["ok"] += 1
        else:
            counts[status.value] += 1

    def render(self, report: Optional[RunReport] = None) -> str:
        lines: list[str] = []
        totals = {"ok": 0, "changed": 0, "failed": 0, "skipped": 0}
        for host, counts in self.hosts.items():
            for key, value in counts.items():
                totals[key] += value
            failed_host = report is not None and host in report.failed_hosts
            text = " ".join(f"{key}={value}" for key, value in counts.items())
            color = Ansi.RED if failed_host else (Ansi.YELLOW if counts["changed"] else Ansi.GREEN)
            lines.append(colorize(f"{host:<24} : {text}", color))
        parts = [
            f"OK: {totals['ok']}",
            f"Changed: {totals['changed']}",
            f"Failed: {totals['failed']}",
            f"Skipped: {totals['skipped']}",
        ]
        text = " | ".join(parts)
        clean = totals["failed"] == 0 and (report is None or not report.failed_hosts)
        lines.append(colorize(text, Ansi.GREEN if clean else Ansi.RED))
        if report is not None and report.cancelled:
            lines.append(colorize("Run interrupted", Ansi.RED))
        return "\n".join(lines)


if __name__ == "__main__":
    raise SystemExit(main())
