"""Command line interface for TripBrief."""

from __future__ import annotations

import argparse
from datetime import datetime, timezone
import json
import os
import sys
from typing import Callable, Sequence, TextIO

from tripbrief.brief import snapshot
from tripbrief.contracts import TurnRequest, TurnResponse
from tripbrief.conversation import TurnProcessor, build_processor
from tripbrief.settings import PlannerSettings, load_env_file
from tripbrief.telemetry import start_span


DEMO_SCRIPT: tuple[str, ...] = (
    "I'd like to visit Italy from 2027-03-01 to 2027-03-07, just me, budget £2000, mid-range please",
    "yes",
    "yes",
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tripbrief",
        description="TripBrief conversational trip planner.",
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Print OpenTelemetry spans to stderr (same as TRIPBRIEF_TRACING_ENABLED=1).",
    )
    subparsers = parser.add_subparsers(dest="command")

    chat_parser = subparsers.add_parser("chat", help="Plan a trip interactively.")
    chat_parser.add_argument("--trip-id", default="cli-trip", help="Trip identifier.")
    chat_parser.add_argument("--now-ts", default=None, help="Fixed ISO-8601 clock for deterministic runs.")

    turn_parser = subparsers.add_parser(
        "turn",
        help="Run one or more messages through a fresh trip and print the last response.",
    )
    turn_parser.add_argument("messages", nargs="+", help="Messages in conversation order.")
    turn_parser.add_argument("--trip-id", default="cli-trip", help="Trip identifier.")
    turn_parser.add_argument("--now-ts", default=None, help="Fixed ISO-8601 clock for deterministic runs.")
    turn_parser.add_argument(
        "--format",
        choices=["json", "text"],
        default="json",
        help="Output format.",
    )

    demo_parser = subparsers.add_parser("demo", help="Run a scripted offline conversation.")
    demo_parser.add_argument("--now-ts", default=None, help="Fixed ISO-8601 clock for deterministic runs.")
    return parser


def _clock(now_ts: str | None) -> Callable[[], datetime]:
    raw = now_ts or os.getenv("TRIPBRIEF_NOW_TS")
    if not raw:
        return lambda: datetime.now(timezone.utc)
    fixed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    return lambda: fixed


def make_processor(now_ts: str | None = None) -> TurnProcessor:
    load_env_file()
    return build_processor(PlannerSettings.from_env(), clock=_clock(now_ts))


def run_turns(processor: TurnProcessor, trip_id: str, messages: Sequence[str]) -> list[TurnResponse]:
    responses = []
    for message in messages:
        with start_span("cli.turn", {"tripbrief.trip_id": trip_id}):
            responses.append(processor.handle(TurnRequest(trip_id=trip_id, message=message)))
    return responses


def run_demo(now_ts: str | None = None) -> dict[str, object]:
    processor = make_processor(now_ts or "2026-10-17T09:00:00+00:00")
    try:
        responses = run_turns(processor, "demo-trip", DEMO_SCRIPT)
        brief = processor.brief("demo-trip")
    finally:
        processor.close()
    final = responses[-1]
    plan = next((r.proposed_plan for r in reversed(responses) if r.proposed_plan is not None), None)
    return {
        "trip_id": "demo-trip",
        "phase": final.phase,
        "brief": snapshot(brief) if brief is not None else None,
        "transcript": [
            {"user": message, "assistant": response.reply}
            for message, response in zip(DEMO_SCRIPT, responses)
        ],
        "plan": plan.model_dump(mode="json") if plan is not None else None,
    }


def run_chat(processor: TurnProcessor, trip_id: str, stdin: TextIO, stdout: TextIO) -> int:
    stdout.write("Tell me about your trip (empty line to quit).\n")
    for line in stdin:
        message = line.strip()
        if not message:
            break
        response = run_turns(processor, trip_id, [message])[0]
        stdout.write(response.reply + "\n")
        stdout.flush()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.trace:
        os.environ["TRIPBRIEF_TRACING_ENABLED"] = "1"

    if args.command == "demo":
        print(json.dumps(run_demo(args.now_ts), ensure_ascii=True))
        return 0

    if args.command == "turn":
        processor = make_processor(args.now_ts)
        try:
            response = run_turns(processor, args.trip_id, args.messages)[-1]
        finally:
            processor.close()
        if args.format == "text":
            print(response.reply)
        else:
            print(json.dumps(response.model_dump(mode="json"), ensure_ascii=True))
        return 0

    if args.command == "chat":
        processor = make_processor(args.now_ts)
        try:
            return run_chat(processor, args.trip_id, sys.stdin, sys.stdout)
        finally:
            processor.close()

    parser.print_help()
    return 0
