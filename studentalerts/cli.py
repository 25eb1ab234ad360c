"""
Command line entry point for running alert detection over a JSON export.

Usage:
    studentalerts detect --input export.json --student s-001
    studentalerts baseline --input export.json --student s-001 --now 2026-03-01T12:00:00Z

State (baselines, experiment assignments, threshold overrides) is kept under
``--state-dir`` (default: config.state_dir), one sub-directory per owner.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from studentalerts.anomaly.tau_u import TauUEvaluator, TauUOutcomeDetector
from studentalerts.core.config import config
from studentalerts.core.exceptions import StudentAlertsError
from studentalerts.core.logging_config import setup_logging
from studentalerts.data.ingestion import JSONObservationSource
from studentalerts.data.normalizers import normalize_timestamp
from studentalerts.detection.engine import DetectionEngine
from studentalerts.storage.repositories import FileKeyValueStore

logger = logging.getLogger("studentalerts.cli")


def build_engine(state_dir: Path) -> DetectionEngine:
    series = config.alerts.series
    evaluator = TauUEvaluator(
        min_effect=series.tau_u_min_effect,
        baseline_window_days=series.tau_u_baseline_window_days,
    )
    return DetectionEngine(
        baseline_store=FileKeyValueStore(state_dir / "baselines"),
        experiment_store=FileKeyValueStore(state_dir / "experiments"),
        threshold_store=FileKeyValueStore(state_dir / "thresholds"),
        settings=config.alerts,
        outcome_detector=TauUOutcomeDetector(evaluator),
    )


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="studentalerts", description="Student alert detection")
    parser.add_argument("--log-level", default=None, help="Override STUDENT_ALERTS_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    detect = sub.add_parser("detect", help="Run detection and print alerts as JSON")
    baseline = sub.add_parser("baseline", help="Recompute and print the student's baseline")
    for command in (detect, baseline):
        command.add_argument("--input", required=True, type=Path, help="JSON observation export")
        command.add_argument("--student", required=True, help="Student id")
        command.add_argument("--now", default=None, help="Reference time (ISO 8601 or epoch)")
        command.add_argument("--state-dir", default=None, type=Path, help="Directory for persisted state")
    detect.add_argument("--refresh-baseline", action="store_true", help="Recompute the baseline first")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = _parser().parse_args(argv)
    setup_logging(level=args.log_level)

    try:
        now = normalize_timestamp(args.now) if args.now else None
        engine = build_engine(args.state_dir or config.state_dir)
        source = JSONObservationSource(args.input)
    except StudentAlertsError as e:
        logger.error(str(e))
        return 2

    if args.command == "baseline":
        baseline = engine.refresh_baseline(
            args.student,
            source.emotions_for(args.student),
            source.sensory_for(args.student),
            source.sessions_for(args.student),
            now=now,
        )
        if baseline is None:
            logger.warning(f"Not enough data to compute a baseline for {args.student}")
            return 1
        print(baseline.model_dump_json(indent=2))
        return 0

    alerts = engine.run_for_student(args.student, source, now=now, refresh_baseline=args.refresh_baseline)
    print(json.dumps([a.model_dump(mode="json") for a in alerts], indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
