"""rlmkit command line.

Commands:
- rlmkit ask AGENTS.json "question"
- rlmkit plan AGENTS.json "question"
- rlmkit stats AGENTS.json
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from rlmkit import __logo__, __version__

console = Console()

app = typer.Typer(
    name="rlmkit",
    help=f"{__logo__} rlmkit - ask questions across many summarized sources",
    no_args_is_help=True,
)


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} rlmkit v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """rlmkit - Recursive query orchestration."""
    pass


def _read_agents(path: Path) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Agents file: a JSON list of agents, or ``{"agents": [...], "groups": [...]}``."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Could not read {path}: {e}[/red]")
        raise typer.Exit(1)
    if isinstance(data, list):
        return data, []
    return data.get("agents", []), data.get("groups", [])


def _make_pipeline(agents_file: Path, config_path: Optional[Path], verbose: bool):
    from rlmkit.config.loader import load_config
    from rlmkit.rlm.pipeline import Pipeline
    from rlmkit.utils.logging import configure_logging

    configure_logging(verbose=verbose)
    config = load_config(config_path)
    pipeline = Pipeline(config)
    agents, groups = _read_agents(agents_file)
    pipeline.load_agents(agents, groups)
    return pipeline


@app.command()
def ask(
    agents_file: Path = typer.Argument(..., help="JSON file with agents (and optional groups)"),
    question: str = typer.Argument(..., help="Question to ask across the agents"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="LiteLLM model id"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config JSON file"),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logs"),
    show_metadata: bool = typer.Option(False, "--metadata", help="Print response metadata"),
):
    """Answer a question with the full pipeline."""
    from rlmkit.providers import LiteLLMProvider, as_call_fn

    pipeline = _make_pipeline(agents_file, config_path, verbose)
    provider_config = pipeline.config.provider
    provider = LiteLLMProvider.from_config(provider_config, model=model)
    call_fn = as_call_fn(provider, temperature=provider_config.temperature)

    def on_progress(event):
        if event.type.value in ("plan_created", "phase_started"):
            console.print(f"[dim]{event.type.value}: {event.data}[/dim]")

    pipeline.set_progress_callback(on_progress)

    with console.status("[bold cyan]Thinking...[/bold cyan]"):
        result = asyncio.run(pipeline.process(question, call_fn))

    if result.success:
        console.print(Panel(Markdown(result.response), title=f"{__logo__} Answer", border_style="cyan"))
    else:
        console.print(f"[red]{result.response}[/red]")
        if result.metadata.error:
            console.print(f"[dim]{result.metadata.error}[/dim]")

    if show_metadata:
        meta = result.metadata
        table = Table(title="Metadata")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="green")
        for field_name in (
            "strategy", "total_sub_queries", "successful_queries", "failed_queries",
            "aggregation_type", "conflicts", "agreements", "input_tokens", "output_tokens",
            "early_stop", "timed_out", "memory_slices_used",
        ):
            table.add_row(field_name, str(getattr(meta, field_name)))
        table.add_row("pipeline_time", f"{meta.pipeline_time:.2f}s")
        console.print(table)

    if not result.success:
        raise typer.Exit(1)


@app.command()
def plan(
    agents_file: Path = typer.Argument(..., help="JSON file with agents (and optional groups)"),
    question: str = typer.Argument(..., help="Question to plan"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config JSON file"),
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logs"),
):
    """Show how a question would be decomposed, without calling a model."""
    pipeline = _make_pipeline(agents_file, config_path, verbose)
    query_plan = pipeline.plan(question)
    classification = query_plan.classification

    console.print(f"\n{__logo__} Plan: [bold]{query_plan.strategy.value}[/bold] ({query_plan.reason})")
    console.print(
        f"Intent: [cyan]{classification.type.value}[/cyan] | "
        f"Complexity: [cyan]{classification.complexity.value}[/cyan] | "
        f"Relevant agents: {len(query_plan.relevance)}"
    )
    if query_plan.truncated:
        console.print(f"[yellow]{query_plan.truncated} agents dropped by the sub-query ceiling[/yellow]")

    table = Table(title=f"{query_plan.total_sub_queries} sub-queries")
    table.add_column("Id", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Sources", style="green")
    table.add_column("Perspective", style="yellow")
    table.add_column("Prompt", style="dim")
    for sub_query in query_plan.sub_queries:
        table.add_row(
            sub_query.id,
            sub_query.kind.value,
            sub_query.label or str(len(sub_query.target_agent_ids)),
            sub_query.perspective or "-",
            sub_query.prompt[:80],
        )
    console.print(table)


@app.command()
def stats(
    agents_file: Path = typer.Argument(..., help="JSON file with agents (and optional groups)"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config JSON file"),
):
    """Show what the pipeline would work with."""
    pipeline = _make_pipeline(agents_file, config_path, verbose=False)
    context = pipeline.store.stats()

    table = Table(title=f"{__logo__} Context")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Agents", str(context["total_agents"]))
    table.add_row("Active agents", str(context["active_agents"]))
    table.add_row("Groups", str(context["total_groups"]))
    table.add_row("Max sub-queries", str(pipeline.config.max_sub_queries))
    table.add_row("Max concurrent", str(pipeline.config.max_concurrent))
    table.add_row("Max depth", str(pipeline.config.max_depth))
    table.add_row("Memory mode", pipeline.config.memory.mode)
    console.print(table)


if __name__ == "__main__":
    app()
