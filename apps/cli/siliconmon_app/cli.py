"""CLI entrypoints for the siliconmon dashboard and headless tools."""

from __future__ import annotations

import argparse
import json
from enum import Enum
from pathlib import Path
from typing import Any

from siliconmon_core import AppConfig, build_doctor_payload, build_pipeline, load_config, profile_from_config
from siliconmon_core.config import normalize
from siliconmon_core.logging_setup import configure_logging
from siliconmon_renderer import list_themes
from siliconmon_telemetry import MalformedBlock, SystemSnapshot, parse_report_text, split_reports


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=_jsonable))


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(_jsonable(v) for v in value)
    if isinstance(value, Path):
        return str(value)
    return str(value)


def snapshot_payload(snap: SystemSnapshot) -> dict[str, Any]:
    return {
        "generation": snap.generation,
        "captured_utc": snap.captured_at.isoformat(),
        "staleness_s": snap.staleness,
        "degraded": sorted(s.value for s in snap.degraded),
        "values": {k: _jsonable(v) if isinstance(v, Enum) else v for k, v in sorted(snap.values.items())},
        "stale_fields": {k: snap.field_staleness(k) for k in sorted(snap.values) if snap.is_stale(k)},
    }


def _apply_overrides(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    if getattr(args, "interval_ms", None):
        cfg.sampling.period_ms = args.interval_ms
        cfg.power_report.interval_ms = args.interval_ms
        cfg.sampling.source_deadline_ms = int(args.interval_ms * 0.9)
    if getattr(args, "no_power", False):
        cfg.power_report.enabled = False
    if getattr(args, "theme", None):
        cfg.ui.theme = args.theme
    return normalize(cfg)


def _replay_path(args: argparse.Namespace) -> Path | None:
    replay = getattr(args, "replay", None)
    return Path(replay).expanduser().resolve() if replay else None


def cmd_run(args: argparse.Namespace) -> int:
    from .app import run_dashboard

    cfg = _apply_overrides(load_config(), args)
    return run_dashboard(cfg, replay=_replay_path(args))


def cmd_snapshot(args: argparse.Namespace) -> int:
    cfg = _apply_overrides(load_config(), args)
    pipeline = build_pipeline(cfg, replay=_replay_path(args))
    timeout = max(args.timeout, pipeline.scheduler.period_s * 2)

    with pipeline.scheduler:
        snap = pipeline.channel.wait_for_generation(args.cycles, timeout=timeout * args.cycles)

    if snap is None:
        _print_json({"success": False, "error": f"no snapshot after {args.cycles} cycles"})
        return 2
    payload = snapshot_payload(snap)
    payload["success"] = True
    _print_json(payload)
    return 0


def cmd_parse(args: argparse.Namespace) -> int:
    text = Path(args.report).read_text(encoding="utf-8")
    reports = []
    for block in split_reports(iter(text.splitlines(keepends=True))):
        try:
            sample = parse_report_text(block)
        except MalformedBlock as exc:
            reports.append({"error": str(exc)})
            continue
        reports.append({k: _jsonable(v) if isinstance(v, Enum) else v for k, v in sample.fields.items()})
    if not reports:
        _print_json({"success": False, "error": "no reports found"})
        return 2
    _print_json({"success": True, "reports": reports})
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    cfg = load_config()
    profile = profile_from_config(cfg, probe_gpu=not args.fast)
    _print_json(build_doctor_payload(cfg, profile))
    return 0


def _add_source_args(cmd: argparse.ArgumentParser) -> None:
    cmd.add_argument("--interval-ms", type=int, default=None, help="Sampling period and report interval")
    cmd.add_argument("--no-power", action="store_true", help="Skip the privileged power report source")
    cmd.add_argument("--replay", default=None, help="Serve power reports from a captured text file")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="siliconmon", description="Live SoC telemetry monitor")
    sub = parser.add_subparsers(dest="command", required=True)

    run_cmd = sub.add_parser("run", help="Run the live terminal dashboard")
    _add_source_args(run_cmd)
    run_cmd.add_argument("--theme", choices=list_themes(), default=None)
    run_cmd.set_defaults(func=cmd_run)

    snap_cmd = sub.add_parser("snapshot", help="Sample headless and print one snapshot as JSON")
    _add_source_args(snap_cmd)
    snap_cmd.add_argument("--cycles", type=int, default=2, help="Cycles to run before printing")
    snap_cmd.add_argument("--timeout", type=float, default=5.0, help="Seconds to wait per cycle")
    snap_cmd.set_defaults(func=cmd_snapshot)

    parse_cmd = sub.add_parser("parse", help="Parse a captured power report and print its fields")
    parse_cmd.add_argument("--report", required=True, help="Path to captured report text")
    parse_cmd.set_defaults(func=cmd_parse)

    doctor_cmd = sub.add_parser("doctor", help="Print platform, privilege and source diagnostics")
    doctor_cmd.add_argument("--fast", action="store_true", help="Skip the slow GPU core probe")
    doctor_cmd.set_defaults(func=cmd_doctor)

    return parser


def main(argv: list[str] | None = None) -> int:
    cfg = load_config()
    configure_logging(keep_files=cfg.diagnostics.keep_log_files, console=False)
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
