"""
RecallEngine – Entry point
===========================
Command-line access to the engine: create the database, print a learner's
statistics, run the stress-test harness.
"""

import json
import logging
import sys
from dataclasses import asdict
from typing import Annotated, Optional

import typer

from core.card_store import SqlCardStore
from core.config import get_settings
from core.harness import PRESETS, run_preset, run_stress_test
from core.stats import learner_stats
from db.database import create_db_engine, init_db, make_session_factory

app = typer.Typer(
    help="RecallEngine: SM-2 spaced-repetition scheduling engine.",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log at DEBUG level.")
    ] = False,
):
    """Global settings."""
    level = logging.DEBUG if verbose else get_settings().log_level.upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s:%(name)s:%(message)s",
        stream=sys.stderr,
    )


def _open_store() -> SqlCardStore:
    engine = create_db_engine(get_settings().database_url)
    init_db(engine)
    return SqlCardStore(make_session_factory(engine))


@app.command("init-db")
def init_db_cmd():
    """Create the database tables."""
    settings = get_settings()
    init_db(create_db_engine(settings.database_url))
    typer.echo(f"Database ready at {settings.database_url}")


@app.command()
def stats(learner_id: Annotated[str, typer.Argument(help="Learner to summarise.")]):
    """Print a learner's card statistics as JSON."""
    store = _open_store()
    result = learner_stats(store.load_cards(learner_id), store.now())
    typer.echo(json.dumps(asdict(result), indent=2))


@app.command("stress-test")
def stress_test(
    cards: Annotated[int, typer.Option(help="Cards per learner.")] = 1000,
    sessions: Annotated[int, typer.Option(help="Concurrent sessions.")] = 5,
    duration_ms: Annotated[int, typer.Option(help="Run time in milliseconds.")] = 30_000,
    preset: Annotated[
        Optional[str], typer.Option(help=f"One of: {', '.join(PRESETS)}.")
    ] = None,
    seed: Annotated[Optional[int], typer.Option(help="Random seed.")] = None,
    no_trace: Annotated[
        bool, typer.Option("--no-trace", help="Skip tracemalloc memory tracing.")
    ] = False,
):
    """Run the stress-test harness against an in-memory card store."""
    if preset is not None:
        if preset not in PRESETS:
            typer.echo(f"Unknown preset {preset!r}; choose from {', '.join(PRESETS)}", err=True)
            raise typer.Exit(code=2)
        result = run_preset(preset, seed=seed, trace_memory=not no_trace)
    else:
        result = run_stress_test(
            cards, sessions, duration_ms, seed=seed, trace_memory=not no_trace
        )

    typer.echo(json.dumps(asdict(result), indent=2, default=str))
    if not result.success:
        raise typer.Exit(code=1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
