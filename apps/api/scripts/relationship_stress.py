#!/usr/bin/env python3
"""Race link, relink and dependency writes against one store and report what broke.

Prints one line per scenario with the figures that matter for it (how many
link attempts won, how many link rows a relink observer saw, how many ring
edges were stored against the ``ring_size - 1`` that keep the graph open),
followed by every failing iteration's actual values.

Exit status is 1 when an invariant selected with ``--fail-on`` failed (all
invariants by default), 2 on bad arguments.
"""
from __future__ import annotations

import argparse
import json
import platform
import sys
from pathlib import Path
from typing import Any


QUICK_PRESET = {
    "link_iterations": 1,
    "link_parallelism": 4,
    "link_todo_count": 4,
    "relink_iterations": 1,
    "relink_parallelism": 4,
    "relink_attempts": 8,
    "ring_iterations": 1,
    "ring_parallelism": 4,
    "ring_size": 4,
}

# Figures worth a glance per scenario, in print order.
HEADLINE_METRICS = {
    "parallel-link-race": ("link_success_count", "already_linked_count", "final_link_rows"),
    "parallel-relink-race": ("relink_success_count", "min_observed_link_rows", "max_observed_link_rows"),
    "dependency-ring-race": ("edge_count", "cycle_rejected_count", "duplicate_rejected_count"),
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--quick", action="store_true", help="one small iteration per scenario")
    parser.add_argument("--output", type=Path, default=None, help="write the full JSON report here")
    parser.add_argument("--markdown", type=Path, default=None, help="write a Markdown summary here")
    parser.add_argument(
        "--fail-on",
        action="append",
        default=[],
        metavar="INVARIANT",
        help="invariant id (or scenario/id) that fails the run; repeatable, default: every invariant",
    )
    for name, default in QUICK_PRESET.items():
        parser.add_argument(f"--{name.replace('_', '-')}", type=int, default=None, help=f"quick preset: {default}")
    return parser.parse_args(argv)


def build_config_values(args: argparse.Namespace) -> dict[str, int] | str:
    """Config overrides from the command line, or an error message."""
    values: dict[str, int] = dict(QUICK_PRESET) if args.quick else {}
    for name in QUICK_PRESET:
        override = getattr(args, name)
        if override is not None:
            values[name] = override
    for name, value in values.items():
        floor = 2 if name == "ring_size" else 1
        if value < floor:
            return f"--{name.replace('_', '-')} must be >= {floor}"
    return values


def failing_invariants(report: dict[str, Any], selectors: list[str]) -> list[dict[str, Any]]:
    """Failed invariants matching ``selectors`` (bare id or ``scenario/id``); all failures when empty."""
    failed: list[dict[str, Any]] = []
    for scenario in report["scenarios"]:
        for invariant in scenario["invariants"]:
            if invariant["passed"]:
                continue
            qualified = f"{scenario['name']}/{invariant['id']}"
            if selectors and invariant["id"] not in selectors and qualified not in selectors:
                continue
            failed.append({"scenario": scenario["name"], **invariant})
    return failed


def unknown_selectors(report: dict[str, Any], selectors: list[str]) -> list[str]:
    known: set[str] = set()
    for scenario in report["scenarios"]:
        for invariant in scenario["invariants"]:
            known.add(invariant["id"])
            known.add(f"{scenario['name']}/{invariant['id']}")
    return [selector for selector in selectors if selector not in known]


def render_console(report: dict[str, Any]) -> list[str]:
    lines: list[str] = []
    for scenario in report["scenarios"]:
        figures = ", ".join(
            f"{key}={scenario['metrics'][key]['min']}..{scenario['metrics'][key]['max']}"
            for key in HEADLINE_METRICS.get(scenario["name"], ())
            if key in scenario["metrics"]
        )
        lines.append(f"{scenario['status'].upper():4} {scenario['name']} x{scenario['iterations']}: {figures}")
        for invariant in scenario["invariants"]:
            for failure in invariant["actual_failures"]:
                lines.append(
                    f"     iteration {failure['iteration']} broke {invariant['id']}: "
                    f"expected {invariant['expected']}, got {failure['actual']}"
                )
    return lines


def render_markdown(report: dict[str, Any], failed: list[dict[str, Any]]) -> str:
    summary = report["summary"]
    lines = [
        "# Task relationship race report",
        "",
        f"Generated `{report['generated_at_utc']}` on Python `{report['python']}`.",
        f"Invariants held: `{summary['invariants_passed']}/{summary['invariants_total']}`.",
        "",
        "| scenario | status | min..max |",
        "| --- | --- | --- |",
    ]
    for scenario in report["scenarios"]:
        cells = [
            f"`{key}` {scenario['metrics'][key]['min']}..{scenario['metrics'][key]['max']}"
            for key in HEADLINE_METRICS.get(scenario["name"], ())
        ]
        lines.append(f"| {scenario['name']} | {scenario['status']} | {', '.join(cells)} |")
    lines.append("")

    if failed:
        lines.append("## Broken invariants")
        lines.append("")
        for invariant in failed:
            lines.append(f"- `{invariant['scenario']}/{invariant['id']}`: {invariant['description']}")
            for failure in invariant["actual_failures"]:
                lines.append(f"  - iteration {failure['iteration']}: `{failure['actual']}`")
        lines.append("")

    lines.append("## Config")
    lines.append("")
    lines.extend(f"- `{key}`: `{value}`" for key, value in report["config"].items())
    return "\n".join(lines) + "\n"


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    values = build_config_values(args)
    if isinstance(values, str):
        print(f"[relationship-stress] {values}", file=sys.stderr)
        return 2

    try:
        from dashboard_api.concurrency_stress import ConcurrencyStressConfig, run_concurrency_stress_suite
    except ModuleNotFoundError as exc:
        print(f"[relationship-stress] missing dependency: {exc.name}", file=sys.stderr)
        print("[relationship-stress] install the API first: pip install -e .[test]", file=sys.stderr)
        return 2

    report = run_concurrency_stress_suite(ConcurrencyStressConfig(**values))
    report["python"] = platform.python_version()

    unknown = unknown_selectors(report, args.fail_on)
    if unknown:
        print(f"[relationship-stress] unknown invariant(s): {', '.join(unknown)}", file=sys.stderr)
        return 2
    failed = failing_invariants(report, args.fail_on)

    for line in render_console(report):
        print(line)

    if args.output is not None:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        print(f"[relationship-stress] report: {args.output}")
    if args.markdown is not None:
        args.markdown.parent.mkdir(parents=True, exist_ok=True)
        args.markdown.write_text(render_markdown(report, failed), encoding="utf-8")
        print(f"[relationship-stress] summary: {args.markdown}")

    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
