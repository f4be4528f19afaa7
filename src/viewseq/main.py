"""CLI entrypoint for running and inspecting counterbalanced experiments."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Callable
from pathlib import Path

import uvicorn

from .content_loader import load_experiment, load_experiment_from_file
from .deployment import DeploymentError
from .models import Condition, Experiment
from .sequencer import ConfigurationError, build_progress_table, build_sequence
from .service import ExperimentService
from .web import create_app

InputFn = Callable[[str], str]
PrintFn = Callable[[str], None]
FLOW_EXIT_COMMANDS = {":quit", ":exit", ":q"}
DEFAULT_DB_PATH = Path(".viewseq") / "sessions.db"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _experiment(experiment_path: str | None) -> Experiment:
    """Load the bundled experiment or one from a file."""
    if experiment_path:
        return load_experiment_from_file(experiment_path)
    return load_experiment()


def _service(db_path: Path | str, experiment_path: str | None) -> ExperimentService:
    """Create app service with database path and experiment definition."""
    return ExperimentService(db_path=db_path, experiment=_experiment(experiment_path))


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="viewseq", description="Counterbalanced experiment view sequencing")
    parser.add_argument("--db", default=str(DEFAULT_DB_PATH), help="session database path")
    parser.add_argument("--experiment", default=None, help="experiment JSON file (default: bundled)")
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    commands = parser.add_subparsers(dest="command")

    run_parser = commands.add_parser("run", help="walk through one session in the terminal")
    run_parser.add_argument("--session", default=None, help="resume an existing session id")

    show_parser = commands.add_parser("show", help="print the view sequence of each condition")
    show_parser.add_argument("--condition", choices=[condition.value for condition in Condition], default=None)

    commands.add_parser("check", help="validate the experiment definition")

    delete_parser = commands.add_parser("delete", help="remove an abandoned session and its results")
    delete_parser.add_argument("session_id")

    serve_parser = commands.add_parser("serve", help="serve the web adapter")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    return parser


def run(argv: list[str] | None = None, input_fn: InputFn = input, print_fn: PrintFn = print) -> int:
    """Run the CLI application."""
    args = _parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)
    command = args.command or "run"

    if command in {"show", "check"}:
        try:
            experiment = _experiment(args.experiment)
        except ConfigurationError as exc:
            print_fn(f"Invalid experiment: {exc}")
            return 1
        if command == "check":
            print_fn(f"Experiment '{experiment.id}' is valid ({len(experiment.catalog)} views).")
            return 0
        conditions = [Condition(args.condition)] if args.condition else list(Condition)
        for condition in conditions:
            show_sequence(experiment, condition, print_fn)
        return 0

    try:
        db_path = args.db if args.db == ":memory:" else Path(args.db)
        service = _service(db_path, args.experiment)
    except ConfigurationError as exc:
        print_fn(f"Invalid experiment: {exc}")
        return 1
    try:
        if command == "delete":
            return delete_session(service, args.session_id, print_fn)
        if command == "serve":
            uvicorn.run(create_app(service), host=args.host, port=args.port)
            return 0
        return walkthrough(service, input_fn, print_fn, session_id=getattr(args, "session", None))
    finally:
        service.close()


def show_sequence(experiment: Experiment, condition: Condition, print_fn: PrintFn) -> None:
    """Print one condition's sequence with progress markers."""
    templates = experiment.template_views()
    sequence = build_sequence(templates, condition)
    table = build_progress_table(sequence, experiment.progress_bar.views, experiment.progress_bar)
    print_fn(f"\n=== {condition.value} ({len(sequence)} views) ===")
    name_width = max(len("View"), max(len(view.name) for view in sequence))
    role_width = max(len("Role"), max(len(view.role.value) for view in sequence))
    header = f"{'#':>2} {'View':<{name_width}} {'Role':<{role_width}} Progress"
    print_fn(header)
    print_fn("-" * len(header))
    for idx, view in enumerate(sequence, start=1):
        entry = table[view.name]
        progress = f"{entry.index}/{entry.total}" if entry.tracked else "-"
        print_fn(f"{idx:>2} {view.name:<{name_width}} {view.role.value:<{role_width}} {progress}")


def delete_session(service: ExperimentService, session_id: str, print_fn: PrintFn) -> int:
    """Remove one session from the store."""
    if not service.delete_session(session_id):
        print_fn(f"Unknown session: {session_id}")
        return 1
    print_fn(f"Deleted session {session_id}.")
    return 0


def walkthrough(
    service: ExperimentService, input_fn: InputFn, print_fn: PrintFn, session_id: str | None = None
) -> int:
    """Present every view of one session in the terminal."""
    try:
        handle = service.get_session(session_id) if session_id else service.create_session()
    except KeyError:
        print_fn(f"Unknown session: {session_id}")
        return 1
    except DeploymentError as exc:
        print_fn(f"Cannot start session: {exc}")
        return 1

    sequencer = handle.sequencer
    outcome = None
    print_fn(f"Session {handle.session_id} ({handle.condition.value})")
    while not sequencer.is_finished():
        view = sequencer.current()
        print_fn(f"\n=== [{sequencer.cursor + 1}/{len(sequencer.sequence)}] {view.title} ===")
        if view.text:
            print_fn(view.text)
        entry = sequencer.progress_info()
        if entry is not None:
            print_fn(f"Progress: {entry.index}/{entry.total}")
        if view.trials:
            print_fn(f"({view.trials} trials)")

        answer = input_fn("Press Enter to continue (:quit to leave): ").strip().lower()
        if answer in FLOW_EXIT_COMMANDS:
            print_fn(f"Leaving experiment. Resume with: viewseq run --session {handle.session_id}")
            return 0
        outcome = service.complete_view(handle.session_id, view.name)

    submission = outcome.submission if outcome is not None else None
    if submission is None:
        print_fn("\nSession already finished.")
        return 0
    if submission.success:
        print_fn("\nResults submitted. Thank you!")
        if outcome.redirect_url:
            print_fn(f"Continue at: {outcome.redirect_url}")
        return 0
    print_fn(f"\nSubmission failed: {submission.error or submission.status_code}")
    print_fn(f"Please contact {service.experiment.deploy.contact_email} and mention session {handle.session_id}.")
    return 1


def main_entry() -> None:
    """Console script entrypoint."""
    raise SystemExit(run())


if __name__ == "__main__":  # pragma: no cover
    main_entry()
