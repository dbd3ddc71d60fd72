from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence

from relaykit import (
    Approve,
    Halted,
    InvalidState,
    Revert,
    Revise,
    RunState,
    Stop,
    UnknownStep,
)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_INVALID_STATE = 2
EXIT_UNKNOWN_STEP = 3
EXIT_HALTED = 4


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="relay", add_help=True)
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a config YAML (defaults to $RELAY_CONFIG or <repo>/config/config.yaml)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("resume", help="Resume the pipeline and run until it pauses, fails or completes")

    decide = sub.add_parser("decide", help="Apply a decision to a paused pipeline")
    decisions = decide.add_subparsers(dest="decision", required=True)
    decisions.add_parser("approve", help="Approve the paused step and continue")
    revise = decisions.add_parser("revise", help="Re-run the paused step with feedback")
    revise.add_argument("feedback", help="Feedback passed to the step executor")
    revert = decisions.add_parser("revert", help="Rewind to an earlier step (index or name)")
    revert.add_argument("target", help="Step index (1-based) or exact step name")
    decisions.add_parser("stop", help="Leave the pipeline paused and exit")

    sub.add_parser("reset-state", help="Delete all state records, keep deliverables")
    sub.add_parser("reset-all", help="Delete all state records and recorded deliverables")

    status = sub.add_parser("status", help="Show per-step status")
    status.add_argument("--csv", default=None, help="Also write the step table to this CSV path")

    return parser


def _report(outcome: RunState) -> None:
    print(outcome.describe())


def _decision_from_args(args: argparse.Namespace):
    if args.decision == "approve":
        return Approve()
    if args.decision == "revise":
        return Revise(args.feedback)
    if args.decision == "revert":
        return Revert(args.target)
    if args.decision == "stop":
        return Stop()
    raise AssertionError(f"Unhandled decision: {args.decision}")


def _run(args: argparse.Namespace) -> int:
    from .app.runner import open_session, raise_if_halted

    session = open_session(args.config)
    orchestrator = session.orchestrator

    if args.command == "resume":
        outcome = raise_if_halted(orchestrator.run())
        _report(outcome)
        return EXIT_OK

    if args.command == "decide":
        decision = _decision_from_args(args)
        outcome = raise_if_halted(orchestrator.apply_decision(decision))
        _report(outcome)
        if isinstance(decision, Stop):
            raise Halted(f"stopped: {outcome.describe()}", step_index=outcome.step_index)
        return EXIT_OK

    if args.command == "reset-state":
        removed = orchestrator.reset_state()
        print(f"Removed {len(removed)} state record(s)")
        return EXIT_OK

    if args.command == "reset-all":
        removed = orchestrator.reset_all()
        print(f"Removed state and {len(removed)} deliverable(s)")
        return EXIT_OK

    if args.command == "status":
        from .framework.status import render_status, write_status_csv

        state = orchestrator.load_state()
        run_state = state.run_state() if state is not None else None
        print(render_status(session.cfg.definition, state, run_state))
        if args.csv:
            write_status_csv(args.csv, session.cfg.definition, state)
            print(f"Wrote {args.csv}")
        return EXIT_OK

    raise AssertionError(f"Unhandled command: {args.command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)

    try:
        return _run(args)
    except InvalidState as exc:
        print(f"InvalidState: {exc}", file=sys.stderr)
        return EXIT_INVALID_STATE
    except UnknownStep as exc:
        print(f"UnknownStep: {exc}", file=sys.stderr)
        return EXIT_UNKNOWN_STEP
    except Halted as exc:
        print(f"Halted: {exc}", file=sys.stderr)
        return EXIT_HALTED
    except (FileNotFoundError, ValueError, TypeError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
