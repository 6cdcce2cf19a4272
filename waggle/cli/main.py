"""Main CLI entry point using Typer."""

import json
from pathlib import Path

import anyio
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from waggle import __version__
from waggle.core.config import Settings, get_settings
from waggle.graph.models import DAG

app = typer.Typer(
    name="waggle",
    help="Waggle - plan a goal into a task graph and execute it while it streams",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()

STATUS_COLORS = {
    "idle": "dim",
    "starting": "cyan",
    "working": "yellow",
    "wait": "magenta",
    "done": "green",
    "error": "red",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]Waggle[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Waggle - streaming DAG planning and execution.

    Sends a goal to the planning service, schedules the streamed tasks as
    soon as their dependencies are done, and reports every result.
    """
    pass


def _read_text(value: str) -> str:
    """Return the file contents if ``value`` is a path, else the value itself."""
    path = Path(value)
    if path.exists() and path.is_file():
        console.print(f"[dim]Loaded goal from {path}[/dim]")
        return path.read_text()
    return value


def _settings_with(**overrides: object) -> Settings:
    """Current settings with the given non-None overrides, validated."""
    updates = {key: value for key, value in overrides.items() if value is not None}
    try:
        return Settings.model_validate({**get_settings().model_dump(), **updates})
    except ValidationError as e:
        console.print(f"[bold red]Invalid option: {e.errors()[0]['msg']}[/bold red]")
        raise typer.Exit(code=2) from e


def _dag_table(dag: DAG, title: str = "Execution Graph") -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="bold")
    table.add_column("Depends on")

    for node in dag.nodes:
        deps = ", ".join(edge.s_id for edge in dag.incoming(node.id)) or "-"
        table.add_row(node.id, node.name, deps)
    return table


@app.command()
def run(
    goal: str = typer.Argument(..., help="Goal text or path to a goal file"),
    goal_id: str | None = typer.Option(None, "--goal-id", help="Goal identifier"),
    max_concurrent: int | None = typer.Option(
        None,
        "--max-concurrent",
        "-c",
        help="Maximum concurrent tasks (0 = unbounded)",
    ),
    plan_format: str | None = typer.Option(
        None,
        "--format",
        "-f",
        help="Plan encoding streamed by the planner (yaml or json)",
    ),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug mode"),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the run result as JSON",
    ),
) -> None:
    """
    Plan and execute a goal.

    Press Ctrl+C to abort the run.

    Example:
        waggle run "Compare the top three Python web frameworks"
    """
    goal_text = _read_text(goal)
    settings = _settings_with(
        waggle_max_concurrent_tasks=max_concurrent,
        waggle_plan_format=plan_format,
        waggle_debug=debug or None,
    )

    console.print(
        Panel(
            f"[bold]Goal:[/bold]\n{goal_text[:200]}{'...' if len(goal_text) > 200 else ''}",
            title="[bold blue]Waggle[/bold blue]",
            border_style="blue",
        )
    )

    async def execute() -> int:
        from uuid import uuid4

        from waggle.core.orchestrator import WaggleDance
        from waggle.events.persistence import ResultStore
        from waggle.events.sink import EventSink, PacketEvent

        waggle = WaggleDance(settings=settings)
        run_goal_id = goal_id or str(uuid4())
        execution_id = str(uuid4())

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Planning...", total=None)

            def on_packet(event: PacketEvent) -> None:
                progress.update(task, description=f"{event.node.id} {event.node.name}: {event.status}")

            sink = EventSink(
                goal_id=run_goal_id,
                execution_id=execution_id,
                result_store=ResultStore(settings.result_url, timeout=settings.waggle_request_timeout),
            )
            sink.add_observer(on_packet)
            result = await waggle.run(
                goal_text,
                goal_id=run_goal_id,
                execution_id=execution_id,
                sink=sink,
            )

        table = Table(title="Task Results")
        table.add_column("ID", style="cyan")
        table.add_column("Name", style="bold")
        table.add_column("Status")
        table.add_column("Result")

        for node_id, state in result.task_results.items():
            color = STATUS_COLORS.get(state.status.value, "white")
            value = state.result or ""
            table.add_row(
                node_id,
                state.node.name,
                f"[{color}]{state.status.value}[/{color}]",
                value[:80] + "..." if len(value) > 80 else value,
            )
        console.print(table)

        if output:
            output.write_text(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
            console.print(f"[green]Saved to {output}[/green]")

        if result.is_success:
            console.print("\n[bold green]Goal reached![/bold green]")
            return 0
        console.print(f"\n[bold red]Run {result.status.value}: {result.error}[/bold red]")
        return 1

    try:
        exit_code = anyio.run(execute)
    except KeyboardInterrupt:
        console.print("\n[bold yellow]Run aborted[/bold yellow]")
        raise typer.Exit(code=130) from None
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command()
def plan(
    goal: str = typer.Argument(..., help="Goal text or path to a goal file"),
    plan_format: str | None = typer.Option(
        None,
        "--format",
        "-f",
        help="Plan encoding streamed by the planner (yaml or json)",
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the graph as JSON",
    ),
) -> None:
    """
    Plan a goal without executing it.

    Useful for previewing the task graph.
    """
    goal_text = _read_text(goal)
    settings = _settings_with(waggle_plan_format=plan_format)
    console.print("[bold]Planning...[/bold]")

    async def do_plan() -> DAG:
        from uuid import uuid4

        from waggle.core.cancellation import AbortController
        from waggle.graph.models import LiveGraph, initial_nodes
        from waggle.planning.planner import StreamingPlanParser

        live_graph = LiveGraph(DAG(nodes=initial_nodes(goal_text)))
        parser = StreamingPlanParser.from_settings(settings)
        await parser.plan(
            goal=goal_text,
            goal_id=str(uuid4()),
            execution_id=str(uuid4()),
            signal=AbortController().signal,
            on_fragment=live_graph.merge,
        )
        return live_graph.dag

    from waggle.core.errors import WaggleError

    try:
        dag = anyio.run(do_plan)
    except WaggleError as e:
        console.print(f"[bold red]Planning failed: {e}[/bold red]")
        raise typer.Exit(code=1) from e

    console.print(_dag_table(dag))
    if output:
        output.write_text(json.dumps(dag.to_dict(), indent=2, ensure_ascii=False))
        console.print(f"[green]Saved to {output}[/green]")


@app.command()
def transform(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Levels plan file"),
    plan_format: str = typer.Option(
        "yaml",
        "--format",
        "-f",
        help="Encoding of the file (yaml or json)",
    ),
) -> None:
    """
    Transform a levels plan file into nodes and edges.

    Prints the graph as JSON without the root node.

    Example:
        waggle transform plan.yaml
    """
    from waggle.graph.wire_format import WireFormatError, decode_plan_text, transform_wire_format

    if plan_format not in ("yaml", "json"):
        console.print(f"[bold red]Unknown format: {plan_format}[/bold red]")
        raise typer.Exit(code=2)

    try:
        data = decode_plan_text(file.read_text(), plan_format)  # type: ignore[arg-type]
        dag = transform_wire_format(data)
    except WireFormatError as e:
        console.print(f"[bold red]Invalid plan: {e}[/bold red]")
        raise typer.Exit(code=1) from e

    console.print_json(json.dumps(dag.to_dict(), ensure_ascii=False))


@app.command()
def serve(
    port: int | None = typer.Option(None, "--port", "-p", help="Port for the API server"),
    host: str | None = typer.Option(None, "--host", "-h", help="Host to bind to"),
) -> None:
    """
    Start the Waggle API server.

    Provides a REST API to start and stop runs and a WebSocket stream of
    their packets.

    Example:
        waggle serve --port 8000
    """
    import uvicorn

    from waggle.api.main import app as api_app

    settings = get_settings()
    host = host or settings.waggle_api_host
    port = port or settings.waggle_api_port

    console.print(
        Panel(
            f"[bold]API:[/bold]      http://{host}:{port}/api/runs\n"
            f"[bold]API Docs:[/bold] http://{host}:{port}/docs\n"
            f"[bold]Health:[/bold]   http://{host}:{port}/health",
            title="[bold cyan]Waggle API[/bold cyan]",
            border_style="cyan",
        )
    )

    uvicorn.run(api_app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    app()
