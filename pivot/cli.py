#!/usr/bin/env python3
"""
Pivot operator CLI.

Usage examples:
    pivot review eng-42 --history routing_eng-42.jsonl
    pivot anomalies export eng-42 --format csv
    pivot anomalies prune eng-42 --max-age-days 7
    pivot weights show
    pivot weights promote eng-42 --report review_eng-42.json
    pivot baseline invalidate eng-42
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .anomaly.buffer import AnomalyBuffer
from .base.config import PivotConfig, get_config, setup_logging
from .base.errors import PivotError, handle_error
from .contracts.models import ReviewReport, RoutingHistoryEntry
from .diff.baseline import BaselineManager
from .review.engine import ReviewEngine
from .routing.state import RoutingStateStore

logger = logging.getLogger(__name__)


def _load_history(path: Optional[str]) -> List[RoutingHistoryEntry]:
    if not path:
        return []
    entries: List[RoutingHistoryEntry] = []
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        if line.strip():
            entries.append(RoutingHistoryEntry.model_validate_json(line))
    return entries


def _store(config: PivotConfig, strict: bool = False) -> RoutingStateStore:
    return RoutingStateStore.load(config.storage.routing_state_file, config.routing, strict=strict)


def run_review(args, config: PivotConfig) -> int:
    store = _store(config, strict=args.promote)
    engine = ReviewEngine(store, config.routing, config.delta)
    anomalies = AnomalyBuffer(config).get_anomalies(args.engagement)
    report = engine.review(args.engagement, _load_history(args.history), anomalies=anomalies)

    if args.output:
        Path(args.output).write_text(report.model_dump_json(indent=2), encoding="utf-8")
        print(f"Review written to {args.output}")
    else:
        print(report.model_dump_json(indent=2))

    if args.promote:
        engine.stage(report)
        applied = engine.promote(args.engagement)
        store.save(config.storage.routing_state_file)
        print(f"Promoted {applied} update(s) to {config.storage.routing_state_file}")
    return 0


def run_anomalies(args, config: PivotConfig) -> int:
    buffer = AnomalyBuffer(config)
    if args.action == "export":
        text = buffer.export(args.engagement, args.format)
        if args.output:
            Path(args.output).write_text(text, encoding="utf-8")
            print(f"Exported to {args.output}")
        else:
            print(text)
    elif args.action == "stats":
        print(json.dumps(buffer.statistics(args.engagement), indent=2))
    elif args.action == "prune":
        removed = buffer.prune(args.engagement, args.max_age_days, args.max_count)
        print(f"Pruned {removed} anomal{'y' if removed == 1 else 'ies'} from {args.engagement}")
    return 0


def run_weights(args, config: PivotConfig) -> int:
    store = _store(config, strict=args.action == "promote")
    if args.action == "show":
        for signature in sorted(store.signatures(), key=lambda s: s.id):
            print(
                f"{signature.id:<24} {store.weight(signature.id):.2f}  "
                f"{signature.classification.value:<28} {signature.source.value}"
            )
        return 0

    if not args.engagement or not args.report:
        print("weights promote needs an engagement id and --report", file=sys.stderr)
        return 2
    report = ReviewReport.model_validate_json(Path(args.report).read_text(encoding="utf-8"))
    if report.engagement_id != args.engagement:
        print(f"Report belongs to {report.engagement_id}, not {args.engagement}", file=sys.stderr)
        return 2
    engine = ReviewEngine(store, config.routing, config.delta)
    engine.stage(report)
    applied = engine.promote(args.engagement)
    store.save(config.storage.routing_state_file)
    print(f"Promoted {applied} update(s) from {args.engagement}")
    return 0


def run_baseline(args, config: PivotConfig) -> int:
    # Reading and invalidating never probes, so no executor is needed
    manager = BaselineManager(executor=None, config=config)
    if args.action == "invalidate":
        manager.invalidate(args.engagement)
        print(f"Baseline for {args.engagement} invalidated")
        return 0

    stats = manager.load(args.engagement)
    if stats is None:
        print(f"No baseline stored for {args.engagement}", file=sys.stderr)
        return 1
    print(stats.model_dump_json(indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pivot", description="Pivot obstacle engine operator tools")
    parser.add_argument("--data-dir", help="Override the state directory (PIVOT_DATA_DIR)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    review = subparsers.add_parser("review", help="Review an engagement's routing outcomes")
    review.add_argument("engagement")
    review.add_argument("--history", help="JSON-lines file of routing history entries")
    review.add_argument("--output", help="Write the report here instead of stdout")
    review.add_argument("--promote", action="store_true", help="Apply the proposals to the shared routing state")
    review.set_defaults(func=run_review)

    anomalies = subparsers.add_parser("anomalies", help="Inspect the anomaly buffer")
    anomalies.add_argument("action", choices=["export", "stats", "prune"])
    anomalies.add_argument("engagement")
    anomalies.add_argument("--format", choices=["json", "csv"], default="json")
    anomalies.add_argument("--output")
    anomalies.add_argument("--max-age-days", type=int, default=None)
    anomalies.add_argument("--max-count", type=int, default=None)
    anomalies.set_defaults(func=run_anomalies)

    weights = subparsers.add_parser("weights", help="Show or promote routing weights")
    weights.add_argument("action", choices=["show", "promote"])
    weights.add_argument("engagement", nargs="?")
    weights.add_argument("--report", help="Review report JSON to promote")
    weights.set_defaults(func=run_weights)

    baseline = subparsers.add_parser("baseline", help="Show or invalidate a stored baseline")
    baseline.add_argument("action", choices=["show", "invalidate"])
    baseline.add_argument("engagement")
    baseline.set_defaults(func=run_baseline)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = get_config()
        if args.data_dir:
            config = PivotConfig.for_directory(Path(args.data_dir), seed=config.seed, debug=config.debug)
        if args.debug:
            config.debug = True
        setup_logging(config)
        return args.func(args, config)
    except (PivotError, ValidationError, OSError, ValueError) as e:
        error = handle_error(e, context=args.command)
        logger.error(f"[CLI] {error.code.value}: {error.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
