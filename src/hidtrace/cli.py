"""
hidtrace Command Line Interface.

Provides these commands:
- monitor: Run live correlation until interrupted
- replay: Run a recorded evidence stream through a fresh engine
- devices: Enumerate attached devices with anomaly scores
- incidents: Query the incident store
- policy: Show, validate, or test the policy
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any

import yaml

from hidtrace import __version__
from hidtrace.analyzer.keywords import KeywordMatcher
from hidtrace.analyzer.scoring import DescriptorScorer
from hidtrace.audit.database import IncidentStore
from hidtrace.config import ConfigurationError, HidTraceConfig, load_config, require_valid
from hidtrace.interceptor.events import LogLine
from hidtrace.interceptor.kernel_log import parse_log_line
from hidtrace.policy.defaults import resolve_policy
from hidtrace.policy.models import Policy
from hidtrace.policy.parser import load_policy, validate_policy


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="hidtrace",
        description="Correlate USB telemetry with kernel logs to find keystroke-injection implants",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        metavar="FILE",
        help="Path to configuration file",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output in JSON format",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # monitor command
    monitor_parser = subparsers.add_parser("monitor", help="Run live monitoring")
    monitor_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    monitor_parser.set_defaults(func=cmd_monitor)

    # replay command
    replay_parser = subparsers.add_parser("replay", help="Replay a recorded stream")
    replay_parser.add_argument("file", help="JSON-lines recording")
    replay_parser.add_argument(
        "-o", "--output",
        help="Write incidents to this file instead of stdout",
    )
    replay_parser.add_argument(
        "--store",
        action="store_true",
        help="Also record incidents in the configured incident store",
    )
    replay_parser.set_defaults(func=cmd_replay)

    # devices command
    devices_parser = subparsers.add_parser("devices", help="List attached USB devices")
    devices_parser.add_argument(
        "--no-strings",
        action="store_true",
        help="Don't open devices to read string descriptors",
    )
    devices_parser.set_defaults(func=cmd_devices)

    # incidents command
    incidents_parser = subparsers.add_parser("incidents", help="Query the incident store")
    incidents_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Number of incidents to show",
    )
    incidents_parser.add_argument(
        "-a", "--alerts-only",
        action="store_true",
        help="Only show incidents above the alert threshold",
    )
    incidents_parser.add_argument(
        "--since",
        help="Show incidents since (YYYY-MM-DD or ISO timestamp)",
    )
    incidents_parser.set_defaults(func=cmd_incidents)

    # policy command
    policy_parser = subparsers.add_parser("policy", help="Inspect the policy")
    policy_parser.add_argument(
        "-p", "--policy",
        metavar="FILE",
        help="Policy file (default: from configuration)",
    )
    policy_sub = policy_parser.add_subparsers(dest="policy_cmd")

    policy_sub.add_parser("show", help="Show current policy")
    policy_sub.add_parser("validate", help="Validate policy file")
    match_parser = policy_sub.add_parser("match", help="Classify a log line")
    match_parser.add_argument("line", help="Raw kernel log line")

    policy_parser.set_defaults(func=cmd_policy)

    # Parse arguments
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return args.func(args)
    except (ConfigurationError, yaml.YAMLError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        for error in getattr(e, "errors", []):
            if error != str(e):
                print(f"  - {error}", file=sys.stderr)
        return 1
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def get_config(args: argparse.Namespace) -> HidTraceConfig:
    """Load and validate configuration for a command."""
    return require_valid(load_config(args.config))


def get_policy(args: argparse.Namespace, config: HidTraceConfig) -> Policy:
    """Load the policy named on the command line, else the configured one."""
    path = getattr(args, "policy", None)
    if path:
        return load_policy(path)
    return resolve_policy(config.policy.rules_file)


def output(data: Any, args: argparse.Namespace) -> None:
    """Output data in requested format."""
    if getattr(args, "json", False):
        print(json.dumps(data, indent=2, default=str))
    elif isinstance(data, dict):
        for key, value in data.items():
            print(f"{key}: {value}")
    elif isinstance(data, list):
        for item in data:
            if isinstance(item, dict):
                for key, value in item.items():
                    print(f"  {key}: {value}")
                print()
            else:
                print(f"  {item}")
    else:
        print(data)


def parse_since(value: str) -> datetime:
    """Parse a --since argument as UTC."""
    try:
        ts = datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def cmd_monitor(args: argparse.Namespace) -> int:
    """Run the live daemon in the foreground."""
    from hidtrace.daemon import main as daemon_main

    daemon_args = []
    if args.config:
        daemon_args.extend(["-c", args.config])
    if args.verbose:
        daemon_args.append("-v")

    return daemon_main(daemon_args)


def cmd_replay(args: argparse.Namespace) -> int:
    """Replay a recording and print incidents as JSON lines."""
    from hidtrace.core.replay import RecordingError, load_recording, replay
    from hidtrace.core.sinks import JsonLinesSink, StoreSink

    config = get_config(args)
    policy = get_policy(args, config)

    try:
        snapshots, lines = load_recording(args.file)
    except RecordingError as e:
        print(f"Invalid recording: {e}", file=sys.stderr)
        return 1

    sinks: list[Any] = [JsonLinesSink(args.output or sys.stdout)]
    if args.store:
        sinks.append(StoreSink(IncidentStore(config.database.path, wal_mode=config.database.wal_mode)))

    try:
        incidents = asyncio.run(replay(config, policy, snapshots, lines, sinks=sinks))
    finally:
        for sink in sinks:
            sink.close()

    alerts = sum(1 for i in incidents if i.alert)
    print(f"{len(incidents)} incidents, {alerts} alerts", file=sys.stderr)
    return 0


def cmd_devices(args: argparse.Namespace) -> int:
    """Enumerate attached devices and score them."""
    from hidtrace.interceptor.linux import USBEnumerator

    config = get_config(args)
    scorer = DescriptorScorer(get_policy(args, config))

    enumerator = USBEnumerator(read_strings=not args.no_strings)
    try:
        snapshot = enumerator.snapshot()
    except Exception as e:
        print(f"Error enumerating USB devices: {e}", file=sys.stderr)
        return 1

    devices = [snapshot.devices[k] for k in sorted(snapshot.devices)]
    scored = [(d, scorer.score(d)) for d in devices]

    if getattr(args, "json", False):
        output(
            [{**d.to_dict(), "anomaly": s.to_dict()} for d, s in scored],
            args,
        )
        return 0

    print(f"Attached USB Devices ({len(devices)} found)")
    print("=" * 78)
    for descriptor, score in scored:
        print(
            f"Bus {descriptor.bus:03d} Device {descriptor.address:03d}: "
            f"ID {descriptor.vid_pid} {descriptor.product or ''}".rstrip()
        )
        print(f"  Class:     {descriptor.class_name} (0x{descriptor.device_class:02x})")
        if descriptor.interface_classes:
            names = ", ".join(f"0x{c:02x}" for c in descriptor.interface_classes)
            print(f"  Interfaces: {names}")
        print(f"  Speed:     {descriptor.speed.value} ({descriptor.speed.mbps} Mbit/s)")
        print(f"  Max power: {descriptor.max_power_ma} mA")
        if descriptor.manufacturer:
            print(f"  Vendor:    {descriptor.manufacturer}")
        print(f"  Anomaly:   {score.score:.2f} ({score.level})")
        for reason in score.reasons:
            print(f"    - {reason}")
        print()
    return 0


def cmd_incidents(args: argparse.Namespace) -> int:
    """Query the incident store."""
    config = get_config(args)

    try:
        since = parse_since(args.since) if args.since else None
    except ValueError:
        print(f"Invalid --since value: {args.since!r}", file=sys.stderr)
        return 1

    store = IncidentStore(config.database.path, wal_mode=config.database.wal_mode)
    try:
        records, total = store.list_incidents(
            since=since,
            alerts_only=args.alerts_only,
            limit=args.limit,
        )

        if getattr(args, "json", False):
            output([r.incident for r in records], args)
            return 0

        print(f"Incidents ({len(records)} of {total})")
        print("=" * 86)
        if not records:
            print("No incidents found.")
        else:
            print(
                f"{'Triggered':<20} {'Event':<9} {'Device':<8} {'VID:PID':<10} "
                f"{'Conf':<5} {'Matches':<8} {'Close':<15} {'Flags'}"
            )
            print("-" * 86)
            for record in records:
                flags = []
                if record.alert:
                    flags.append("ALERT")
                if record.cut_short:
                    flags.append("cut-short")
                if record.degraded:
                    flags.append("degraded")
                vid_pid = f"{record.vid}:{record.pid}" if record.vid else "-"
                print(
                    f"{record.trigger_timestamp.strftime('%Y-%m-%d %H:%M:%S'):<20} "
                    f"{record.event_kind:<9} "
                    f"{record.bus}:{record.address:<6} "
                    f"{vid_pid:<10} "
                    f"{record.confidence:<5.2f} "
                    f"{record.match_count:<8} "
                    f"{record.close_reason:<15} "
                    f"{' '.join(flags)}"
                )
        return 0

    finally:
        store.close()


def cmd_policy(args: argparse.Namespace) -> int:
    """Inspect the policy."""
    config = get_config(args)

    if args.policy_cmd == "show":
        policy = get_policy(args, config)

        if getattr(args, "json", False):
            output(policy.to_dict(), args)
        else:
            print(yaml.safe_dump(policy.to_dict(), sort_keys=False), end="")

    elif args.policy_cmd == "validate":
        try:
            policy = get_policy(args, config)
        except ConfigurationError as e:
            print(f"Policy validation failed: {e}")
            return 1

        print(
            f"Policy valid: {len(policy.envelopes)} envelopes, "
            f"{len(policy.signatures)} signatures, {len(policy.rules)} rules"
        )
        warnings = validate_policy(policy)
        if warnings:
            print("\nWarnings:")
            for w in warnings:
                print(f"  - {w}")

    elif args.policy_cmd == "match":
        policy = get_policy(args, config)
        matcher = KeywordMatcher(policy.rules)
        line: LogLine = parse_log_line(args.line)
        match = matcher.match(line)

        if getattr(args, "json", False):
            output(match.to_dict() if match else None, args)
        elif match is None:
            print("No rule matched")
        else:
            print(f"Rule:     {match.rule_id}")
            print(f"Severity: {match.severity.value}")
            print(f"Pattern:  {match.pattern}")
        return 0 if match else 1

    else:
        print("Usage: hidtrace policy {show|validate|match LINE}")

    return 0
