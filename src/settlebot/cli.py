from __future__ import annotations

import argparse
import json
import logging
import random
import sys
import time
from collections.abc import Callable
from dataclasses import asdict
from uuid import uuid4

from pydantic import ValidationError

from settlebot.config import Settings
from settlebot.domain.events import SettlementDecision
from settlebot.domain.models import (
    ConfigurationError,
    EventSource,
    SettlementKind,
    SettlementOutcome,
)
from settlebot.logging_context import with_cycle_context, with_logging_context
from settlebot.logging_utils import setup_logging
from settlebot.observability import configure_instrumentation
from settlebot.services.runtime import SettlementRuntime, build_runtime

logger = logging.getLogger(__name__)

_FAILED_OUTCOMES = {SettlementOutcome.FAILED, SettlementOutcome.INVALID}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="settlebot")
    parser.add_argument("--env-file", default=None, help="Optional dotenv file for settings")
    subparsers = parser.add_subparsers(dest="command", required=True)

    janitor_parser = subparsers.add_parser("janitor", help="Sweep stuck matches")
    janitor_parser.add_argument("--loop", action="store_true", help="Run continuously")
    janitor_parser.add_argument("--cycle-seconds", type=int, default=None)
    janitor_parser.add_argument(
        "--max-cycles", type=int, default=None, help="Stop after N cycles, -1 for infinite"
    )
    janitor_parser.add_argument("--jitter-seconds", type=int, default=0)

    subparsers.add_parser("serve", help="Serve the hosting-provider webhook")

    settle_parser = subparsers.add_parser("settle", help="Manually settle one match")
    settle_parser.add_argument("--match-id", required=True)
    outcome_group = settle_parser.add_mutually_exclusive_group(required=True)
    outcome_group.add_argument("--winner", help="Winner address or team1/team2")
    outcome_group.add_argument("--refund", action="store_true", help="Refund both players")
    settle_parser.add_argument("--reason", default="manual")

    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Reconcile one match with the ledger"
    )
    reconcile_parser.add_argument("--match-id", required=True)

    status_parser = subparsers.add_parser("status", help="Print stored match state")
    status_parser.add_argument("--match-id", required=True)

    args = parser.parse_args(argv)
    try:
        settings = _load_settings(args.env_file)
    except (ValidationError, ConfigurationError) as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2

    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.observability_otlp_endpoint,
        prometheus_port=settings.observability_prometheus_port,
    )

    try:
        runtime = build_runtime(settings)
    except ConfigurationError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2

    try:
        with with_logging_context(run_id=uuid4().hex):
            if args.command == "janitor":
                cycle_seconds = (
                    settings.janitor_interval_seconds
                    if args.cycle_seconds is None
                    else args.cycle_seconds
                )
                return run_with_optional_loop(
                    command="janitor",
                    cycle_fn=lambda: run_janitor_cycle(runtime),
                    loop_enabled=args.loop,
                    cycle_seconds=cycle_seconds,
                    max_cycles=args.max_cycles,
                    jitter_seconds=args.jitter_seconds,
                )
            if args.command == "serve":
                return run_serve(runtime)
            if args.command == "settle":
                return run_settle(
                    runtime,
                    match_id=args.match_id,
                    winner=args.winner,
                    refund=args.refund,
                    reason=args.reason,
                )
            if args.command == "reconcile":
                return run_reconcile(runtime, match_id=args.match_id)
            if args.command == "status":
                return run_status(runtime, match_id=args.match_id)
    finally:
        runtime.close()
    return 2


def _load_settings(env_file: str | None) -> Settings:
    if env_file in (None, ""):
        return Settings()
    return Settings(_env_file=env_file)


def run_janitor_cycle(runtime: SettlementRuntime) -> int:
    with with_cycle_context(cycle_id=uuid4().hex):
        report = runtime.janitor.run_once()
    print(
        "janitor: scanned={scanned} skipped={skipped} "
        "provider_errors={errors} outcomes={outcomes}".format(
            scanned=report.scanned,
            skipped=report.skipped,
            errors=report.provider_errors,
            outcomes=json.dumps(report.outcomes, sort_keys=True),
        )
    )
    failed = sum(report.outcomes.get(outcome.value, 0) for outcome in _FAILED_OUTCOMES)
    return 1 if failed else 0


def run_serve(runtime: SettlementRuntime) -> int:
    import uvicorn

    from settlebot.api.webhook import create_app
    from settlebot.services.event_ingestor import EventIngestor

    try:
        secret = runtime.settings.require_webhook_secret()
    except ConfigurationError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2
    ingestor = EventIngestor(
        store=runtime.store,
        pipeline=runtime.pipeline,
        webhook_secret=secret,
    )
    logger.info(
        "webhook_server_starting",
        extra={
            "extra": {
                "host": runtime.settings.webhook_host,
                "port": runtime.settings.webhook_port,
            }
        },
    )
    uvicorn.run(
        create_app(ingestor),
        host=runtime.settings.webhook_host,
        port=runtime.settings.webhook_port,
        log_config=None,
    )
    return 0


def run_settle(
    runtime: SettlementRuntime,
    *,
    match_id: str,
    winner: str | None,
    refund: bool,
    reason: str,
) -> int:
    if refund:
        decision = SettlementDecision(kind=SettlementKind.REFUND, reason=reason)
    else:
        decision = SettlementDecision(kind=SettlementKind.PAYOUT, reason=reason, winner=winner)
    result = runtime.pipeline.run(match_id, decision, source=EventSource.MANUAL)
    print(
        json.dumps(
            {
                "match_id": match_id,
                "outcome": result.outcome.value,
                "reason": result.reason,
                "tx_refs": list(result.tx_refs),
            },
            sort_keys=True,
        )
    )
    if result.outcome in _FAILED_OUTCOMES or result.outcome is SettlementOutcome.NOT_FOUND:
        return 1
    return 0


def run_reconcile(runtime: SettlementRuntime, *, match_id: str) -> int:
    record = runtime.store.get(match_id)
    if record is None:
        print(f"reconcile: match {match_id} not found", file=sys.stderr)
        return 1
    result = runtime.reconciler.reconcile(record)
    print(json.dumps({"match_id": match_id, "done": result.done, "reason": result.reason}))
    return 0


def run_status(runtime: SettlementRuntime, *, match_id: str) -> int:
    record = runtime.store.get(match_id)
    if record is None:
        print(f"status: match {match_id} not found", file=sys.stderr)
        return 1
    payload = {
        "match": asdict(record),
        "events": runtime.store.list_events(match_id),
    }
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))
    return 0


_CYCLE_ATTEMPTS = 3
_MAX_CYCLE_BACKOFF_SECONDS = 8


def _loop_args_error(cycle_seconds: int, max_cycles: int | None, jitter_seconds: int) -> str | None:
    if cycle_seconds < 0 or jitter_seconds < 0:
        return "cycle-seconds and jitter-seconds must be >= 0"
    if max_cycles is not None and (max_cycles == 0 or max_cycles < -1):
        return "max-cycles must be >= 1, or -1 for infinite"
    return None


def _run_cycle_with_retries(
    command: str, cycle: int, cycle_fn: Callable[[], int], sleep_fn: Callable[[float], None]
) -> int:
    """Run one cycle; an unexpected exception is retried, then counted as rc 1."""
    for attempt in range(1, _CYCLE_ATTEMPTS + 1):
        try:
            return cycle_fn()
        except KeyboardInterrupt:
            raise
        except Exception as exc:  # noqa: BLE001
            fields = {
                "command": command,
                "cycle": cycle,
                "attempt": attempt,
                "error_type": type(exc).__name__,
            }
            if attempt == _CYCLE_ATTEMPTS:
                logger.exception("loop_cycle_failed", extra={"extra": fields})
                break
            backoff = min(_MAX_CYCLE_BACKOFF_SECONDS, 2 ** (attempt - 1))
            logger.warning(
                "loop_cycle_retrying", extra={"extra": {**fields, "sleep_seconds": backoff}}
            )
            sleep_fn(backoff)
    return 1


def run_with_optional_loop(
    *,
    command: str,
    cycle_fn: Callable[[], int],
    loop_enabled: bool,
    cycle_seconds: int,
    max_cycles: int | None,
    jitter_seconds: int,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> int:
    error = _loop_args_error(cycle_seconds, max_cycles, jitter_seconds)
    if error is not None:
        print(error)
        return 2
    if not loop_enabled:
        return cycle_fn()

    cycle_limit = None if max_cycles == -1 else max_cycles
    cycle = 0
    last_rc = 0
    logger.info(
        "loop_runner_started",
        extra={
            "extra": {
                "command": command,
                "cycle_seconds": cycle_seconds,
                "max_cycles": cycle_limit,
                "jitter_seconds": jitter_seconds,
            }
        },
    )
    try:
        while True:
            cycle += 1
            last_rc = _run_cycle_with_retries(command, cycle, cycle_fn, sleep_fn)
            if cycle_limit is not None and cycle >= cycle_limit:
                logger.info(
                    "loop_runner_completed",
                    extra={"extra": {"command": command, "cycles": cycle, "last_rc": last_rc}},
                )
                return last_rc
            jitter = random.randint(0, jitter_seconds) if jitter_seconds else 0
            sleep_fn(max(1, cycle_seconds + jitter))
    except KeyboardInterrupt:
        logger.info(
            "loop_runner_stopped",
            extra={"extra": {"command": command, "cycles": cycle, "last_rc": last_rc}},
        )
        print(f"{command}: interrupted, shutting down cleanly")
        return last_rc


if __name__ == "__main__":
    raise SystemExit(main())
