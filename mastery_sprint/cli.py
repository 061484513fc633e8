"""
Mastery Sprint CLI.

Commands:
    mastery record FILE             - Record activities from a JSON file (object or list)
    mastery metrics USER            - Rolling stats per topic and window
    mastery trends USER TOPIC       - Daily history and trend of one topic
    mastery weaknesses USER         - Ranked weaknesses
    mastery sprint USER             - Generate a mastery sprint
    mastery evaluate SPRINT FILE    - Evaluate sprint results from a JSON file
    mastery abandon SPRINT          - Abandon an active sprint
    mastery drills USER             - Recall drills due now
    mastery goal USER TEXT          - Decompose a learning goal
    mastery model USER              - Show the mastery model
    mastery velocity USER           - Learning velocity per topic
    mastery weekly USER             - Weekly feedback summary
    mastery delete USER             - Erase every trace of a user
    mastery replay                  - Replay writes queued while a store was down

Usage:
    mastery --help
    mastery record activities.json
    mastery sprint alice --json
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import get_settings
from mastery_sprint.core.errors import MasterySprintError
from mastery_sprint.engine import MasteryEngine

T = TypeVar("T")

app = typer.Typer(
    name="mastery",
    help="Mastery sprint engine: activity analytics, weaknesses, sprints and recall drills",
    no_args_is_help=True,
)

console = Console()


def configure_logging() -> None:
    """stderr sink at the configured level, plus a rotating file sink when set."""
    settings = get_settings()
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )
    if settings.log_file:
        Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(settings.log_file, level="DEBUG", rotation="10 MB", retention=5)


def _execute(operation: Callable[[MasteryEngine], Awaitable[T]]) -> T:
    """Run one engine operation; engine errors exit with code 1."""

    async def runner() -> T:
        engine = MasteryEngine.from_settings()
        try:
            return await operation(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(runner())
    except MasterySprintError as e:
        console.print(f"[red]{e.code}:[/] {e.message}")
        for name, detail in (e.details.get("field_errors") or {}).items():
            console.print(f"  [dim]{name}:[/] {detail}")
        raise typer.Exit(code=1) from e


def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read {path}:[/] {e}")
        raise typer.Exit(code=1) from e


def _dump(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def _fmt(value: float | None, suffix: str = "") -> str:
    return "-" if value is None else f"{value:.1f}{suffix}"


JsonOption = Annotated[bool, typer.Option("--json", help="Print raw JSON")]


# =============================================================================
# Activity
# =============================================================================


@app.command()
def record(
    path: Annotated[Path, typer.Argument(help="JSON file with one activity or a list")],
) -> None:
    """Record completed activities and run the analysis pipeline."""
    payload = _load_json(path)
    items = payload if isinstance(payload, list) else [payload]

    async def run(engine: MasteryEngine) -> None:
        for item in items:
            result = await engine.record_activity(item)
            if result.duplicates:
                console.print(f"[dim]Duplicate: {', '.join(result.duplicates)}[/]")
            if result.queued:
                console.print(f"[yellow]Store unavailable; queued {len(result.queued)} record(s)[/]")
            for message in result.feedback:
                console.print(f"[cyan]{message.kind.value:>11}[/] {message.message}")
            if result.sprint:
                console.print(f"[green]New sprint {result.sprint.sprint_id}[/] for {', '.join(result.sprint.topics)}")
            for error in result.errors:
                console.print(f"[red]{error['code']}:[/] {error['message']}")

    _execute(run)


@app.command()
def metrics(
    user_id: str,
    topic: Annotated[str | None, typer.Option("--topic", "-t")] = None,
    as_json: JsonOption = False,
) -> None:
    """Show rolling per-topic statistics."""
    stats = _execute(lambda engine: engine.get_metrics(user_id, topic=topic))
    if as_json:
        _dump({t: {str(w): s.to_dict() for w, s in windows.items()} for t, windows in stats.topics.items()})
        return

    table = Table(title=f"Metrics for {user_id}" + (" (stale)" if stats.stale else ""), show_header=True)
    table.add_column("Topic", style="cyan")
    table.add_column("Window", justify="right")
    table.add_column("Accuracy", justify="right", style="green")
    table.add_column("Speed (s)", justify="right")
    table.add_column("Retention", justify="right", style="yellow")
    table.add_column("Samples", justify="right", style="dim")
    table.add_column("Trend")
    for name in sorted(stats.topics):
        for days, stat in sorted(stats.topics[name].items()):
            table.add_row(
                name,
                f"{days}d",
                _fmt(stat.average_accuracy, "%"),
                _fmt(stat.average_speed),
                _fmt(stat.retention_rate, "%"),
                str(stat.sample_count),
                stat.trend.value if stat.trend else "-",
            )
    console.print(table)


@app.command()
def trends(
    user_id: str,
    topic: str,
    days: Annotated[int, typer.Option("--days", "-d")] = 30,
    as_json: JsonOption = False,
) -> None:
    """Show daily accuracy history and trend for one topic."""
    report = _execute(lambda engine: engine.get_trends(user_id, topic, days=days))
    if as_json:
        _dump(report.to_dict())
        return

    table = Table(title=f"{topic}: {report.trend.value if report.trend else 'insufficient data'}")
    table.add_column("Day", style="cyan")
    table.add_column("Accuracy", justify="right", style="green")
    table.add_column("Speed (s)", justify="right")
    table.add_column("Count", justify="right", style="dim")
    for point in report.points:
        table.add_row(str(point.day), _fmt(point.average_accuracy, "%"), _fmt(point.average_speed), str(point.count))
    console.print(table)
    if report.learning_velocity is not None:
        console.print(f"Learning velocity: {report.learning_velocity:+.2f}")


# =============================================================================
# Weaknesses & Sprints
# =============================================================================


@app.command()
def weaknesses(user_id: str, as_json: JsonOption = False) -> None:
    """Rank the user's weaknesses."""
    ranking = _execute(lambda engine: engine.analyze_weaknesses(user_id))
    if as_json:
        _dump(ranking.to_dict())
        return
    if not ranking.weaknesses:
        console.print("[green]No weaknesses detected.[/]")
        return

    table = Table(title="Weaknesses" + (" (stale)" if ranking.stale else ""))
    table.add_column("#", justify="right", style="dim")
    table.add_column("Topic", style="cyan")
    table.add_column("Type")
    table.add_column("Severity", justify="right", style="red")
    table.add_column("Impact", justify="right", style="yellow")
    table.add_column("Signals", style="dim")
    for i, w in enumerate(ranking.weaknesses, 1):
        table.add_row(
            str(i),
            w.topic,
            w.type.value,
            f"{w.severity:.2f}",
            f"{w.impact_score:.2f}",
            ", ".join(s.value for s in w.signals),
        )
    console.print(table)


@app.command()
def sprint(user_id: str, as_json: JsonOption = False) -> None:
    """Generate a mastery sprint for the top weaknesses."""
    result = _execute(lambda engine: engine.generate_mastery_sprint(user_id))
    if as_json:
        _dump(result.to_dict())
        return

    criteria = result.success_criteria
    console.print(
        Panel(
            f"[bold cyan]{', '.join(result.topics)}[/]\n"
            f"Duration: {result.duration} min | Expires: {result.expires_at:%Y-%m-%d %H:%M}\n"
            f"Target accuracy: {criteria.target_accuracy:.1f}% | "
            f"Target speed: {_fmt(criteria.target_speed, 's')} | "
            f"Completion: {criteria.minimum_completion:.0f}%",
            title=f"Sprint {result.sprint_id[:8]}",
            border_style="cyan",
        )
    )
    table = Table(show_header=True)
    table.add_column("Exercise", style="dim")
    table.add_column("Topic", style="cyan")
    table.add_column("Type")
    table.add_column("Difficulty", justify="right")
    table.add_column("Minutes", justify="right")
    for exercise in result.exercises:
        flags = " ".join(f for f, on in (("timed", exercise.timed), ("recall", exercise.recall)) if on)
        table.add_row(
            exercise.id,
            exercise.topic,
            f"{exercise.type.value} {flags}".strip(),
            str(exercise.difficulty),
            f"{exercise.estimated_time:.0f}",
        )
    console.print(table)


@app.command()
def evaluate(
    sprint_id: str,
    path: Annotated[Path, typer.Argument(help="JSON list of exercise results")],
) -> None:
    """Evaluate a sprint against its success criteria."""
    results = _load_json(path)
    outcome = _execute(lambda engine: engine.evaluate_sprint(sprint_id, results))
    evaluation = outcome.evaluation
    style = "green" if evaluation.criteria_met else "yellow"
    console.print(
        f"[{style}]accuracy {evaluation.accuracy:.1f}% | completion {evaluation.completion:.0f}% | "
        f"speed {_fmt(evaluation.average_speed, 's')}[/]"
    )
    if evaluation.unmet:
        console.print(f"Unmet: {', '.join(evaluation.unmet)}")
    if outcome.celebration:
        console.print(f"[bold green]{outcome.celebration.message}[/]")


@app.command()
def abandon(sprint_id: str) -> None:
    """Abandon an active sprint."""
    _execute(lambda engine: engine.abandon_sprint(sprint_id))
    console.print(f"Sprint {sprint_id} abandoned")


# =============================================================================
# Drills, Goals, Model
# =============================================================================


@app.command()
def drills(user_id: str, as_json: JsonOption = False) -> None:
    """List recall drills due now."""
    due = _execute(lambda engine: engine.generate_recall_drills(user_id))
    if as_json:
        _dump([d.to_dict() for d in due])
        return
    if not due:
        console.print("[green]Nothing due. Great job![/]")
        return

    table = Table(title="Due recall drills")
    table.add_column("Topic", style="cyan")
    table.add_column("Due", style="yellow")
    table.add_column("Interval (d)", justify="right")
    table.add_column("Forced")
    for drill in due:
        table.add_row(
            drill.topic,
            f"{drill.due_at:%Y-%m-%d %H:%M}",
            f"{drill.interval_days:.1f}",
            (drill.reason or "yes") if drill.forced else "",
        )
    console.print(table)


@app.command()
def goal(
    user_id: str,
    text: str,
    topic: Annotated[list[str] | None, typer.Option("--topic", "-t", help="Explicit target topic")] = None,
    as_json: JsonOption = False,
) -> None:
    """Break a learning goal into prerequisite-ordered sub-objectives."""
    goal_input = {"text": text, "target_topics": topic or []}
    plan = _execute(lambda engine: engine.decompose_goal(user_id, goal_input))
    if as_json:
        _dump(plan.to_dict())
        return

    table = Table(title=f"Goal: {text}")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Topic", style="cyan")
    table.add_column("Objective")
    table.add_column("Mastery", justify="right", style="green")
    table.add_column("Minutes", justify="right", style="yellow")
    for i, sub in enumerate(plan.sub_objectives, 1):
        table.add_row(str(i), sub.topic, sub.description, f"{sub.current_mastery:.0f}", f"{sub.estimated_minutes:.0f}")
    console.print(table)
    console.print(f"Estimated total: {plan.total_minutes:.0f} min")


@app.command()
def model(user_id: str, as_json: JsonOption = False) -> None:
    """Show the user's mastery model."""
    result = _execute(lambda engine: engine.get_mastery_model(user_id))
    if as_json:
        _dump(result.to_dict())
        return

    table = Table(title=f"Mastery model v{result.version} ({result.total_activities_completed} activities)")
    table.add_column("Topic", style="cyan")
    table.add_column("Mastery", justify="right", style="green")
    table.add_column("Confidence", justify="right")
    table.add_column("Practice", justify="right", style="dim")
    table.add_column("Velocity", justify="right", style="yellow")
    table.add_column("Trend")
    for t in sorted(result.topics, key=lambda t: -t.mastery_level):
        table.add_row(
            t.topic,
            f"{t.mastery_level:.1f}",
            f"{t.confidence:.2f}",
            str(t.practice_count),
            f"{t.learning_velocity:+.2f}",
            t.trend.value,
        )
    console.print(table)
    patterns = result.learning_patterns
    console.print(
        f"Optimal session: {patterns.optimal_session_duration:.0f} min | "
        f"Peak time: {patterns.peak_performance_time or '-'} | "
        f"Preferred: {', '.join(patterns.preferred_content_types) or '-'}"
    )


@app.command()
def velocity(user_id: str, topic: Annotated[str | None, typer.Option("--topic", "-t")] = None) -> None:
    """Show learning velocity (mastery points per snapshot)."""
    result = _execute(lambda engine: engine.get_learning_velocity(user_id, topic))
    for name, value in sorted(result.items()):
        console.print(f"[cyan]{name:<30}[/] {value:+.2f}")


@app.command()
def weekly(user_id: str) -> None:
    """Weekly feedback summary."""
    summary = _execute(lambda engine: engine.weekly_feedback(user_id))
    _dump(summary.to_dict())


# =============================================================================
# Maintenance
# =============================================================================


@app.command()
def delete(
    user_id: str,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Erase every record, document and queued write of a user."""
    if not yes:
        typer.confirm(f"Erase all data for {user_id}?", abort=True)
    counts = _execute(lambda engine: engine.delete_user(user_id))
    console.print(
        f"Deleted {counts['records']} records, {counts['documents']} documents, "
        f"{counts['queued']} queued writes"
    )


@app.command()
def replay() -> None:
    """Replay writes queued while a store was unreachable."""
    applied = _execute(lambda engine: engine.replay_offline_queue())
    console.print(f"Replayed {len(applied)} queued operations")


def main() -> None:
    """CLI entry point."""
    configure_logging()
    app()


if __name__ == "__main__":
    main()
