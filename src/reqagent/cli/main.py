from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from reqagent.config import ReqAgentConfig, load_config
from reqagent.errors import ConfigValidationError, ContextStoreError, NoProvidersAvailableError
from reqagent.models.document import ClusteringStrategy, LoadOptions
from reqagent.models.provider import HealthStatus
from reqagent.runtime.container import ServiceContainer, build_container
from reqagent.runtime.document_store import InMemoryDocumentStore, scan_generated_documents
from reqagent.runtime.large_context import determine_optimal_strategy
from reqagent.runtime.logging_config import configure_from_config

load_dotenv()

log = logging.getLogger(__name__)

app = typer.Typer(help="Requirements document agent CLI")
console = Console()

_STATUS_COLORS = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.UNHEALTHY: "red",
    HealthStatus.UNKNOWN: "yellow",
}


def _load(config_path: Path, verbose: bool) -> ReqAgentConfig:
    try:
        cfg = load_config(config_path)
    except ConfigValidationError as exc:
        console.print(f"[red]Config validation failed:[/red] {exc.message}")
        raise typer.Exit(code=1) from None
    configure_from_config(cfg, verbose=verbose)
    return cfg


def _prime_budgeter(
    container: ServiceContainer,
    docs_dir: Path | None,
    summary: Path | None,
) -> None:
    budgeter = container.resolve("budgeter")
    if summary is not None:
        budgeter.create_core_context(summary.read_text(encoding="utf-8"))
    if docs_dir is not None:
        for doc in scan_generated_documents(docs_dir):
            budgeter.track_generated_document(doc.type, doc.content)


@app.command()
def providers(
    config_path: Path = typer.Option(Path("config.toml"), "--config"),  # noqa: B008
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Probe every configured provider and print its health."""
    cfg = _load(config_path, verbose)
    container = build_container(cfg)
    backends = container.resolve("backends")
    health = asyncio.run(container.resolve("health").check_all())

    table = Table(title="Providers")
    table.add_column("provider")
    table.add_column("model")
    table.add_column("configured")
    table.add_column("status")
    table.add_column("failures", justify="right")
    table.add_column("avg ms", justify="right")
    table.add_column("last error")
    for provider_id in cfg.fallback.fallback_order:
        backend = backends[provider_id]
        record = health.get(provider_id)
        status = record.status if record else HealthStatus.UNKNOWN
        color = _STATUS_COLORS[status]
        table.add_row(
            provider_id.value,
            backend.model,
            "yes" if backend.is_configured() else "no",
            f"[{color}]{status.value}[/{color}]",
            str(record.consecutive_failures if record else 0),
            f"{record.average_response_time_ms:.0f}" if record and record.samples else "-",
            (record.last_error or "")[:60] if record else "",
        )
    console.print(table)


@app.command()
def strategy(
    count: int = typer.Argument(..., min=0, help="Number of stored documents"),
    config_path: Path = typer.Option(Path("config.toml"), "--config"),  # noqa: B008
) -> None:
    """Show which loading strategy a repository of COUNT documents gets."""
    cfg = _load(config_path, verbose=False)
    plan = determine_optimal_strategy(count, cfg.large_context.max_tokens)
    console.print(f"[bold]{plan.name}[/bold]: {plan.description}")
    console.print(f"  Max documents: {plan.max_documents}")
    console.print(f"  Max tokens: {plan.max_tokens:,}")
    console.print(f"  Clustering: {plan.clustering_enabled}")
    console.print(f"  Summarization: {plan.summarization_enabled}")
    console.print(f"  Smart filtering: {plan.smart_filtering}")


@app.command()
def context(
    doc_type: str,
    docs_dir: Path = typer.Option(Path("generated-documents"), "--docs-dir"),  # noqa: B008
    summary: Path | None = typer.Option(None, "--summary"),  # noqa: B008
    related: list[str] = typer.Option([], "--related"),  # noqa: B008
    large_scale: bool = typer.Option(False, "--large-scale"),
    config_path: Path = typer.Option(Path("config.toml"), "--config"),  # noqa: B008
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Assemble and print the prompt context for DOC_TYPE."""
    cfg = _load(config_path, verbose)
    container = build_container(cfg)
    # In large-scale mode documents reach the budgeter through the loader.
    try:
        _prime_budgeter(container, None if large_scale else docs_dir, summary)
        if large_scale:
            container.override("store", InMemoryDocumentStore(scan_generated_documents(docs_dir)))
    except ContextStoreError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=1) from None

    if large_scale:
        options = LoadOptions(
            max_documents=cfg.large_context.max_documents,
            max_tokens=cfg.large_context.max_tokens,
            clustering_strategy=ClusteringStrategy(cfg.large_context.clustering_strategy),
        )
        result = asyncio.run(
            container.resolve("large_context").load_large_scale_context("local", doc_type, options)
        )
        color = "green" if result.success else "red"
        console.print(
            f"[{color}]{result.strategy}[/{color}] clusters {result.clusters_loaded}/"
            f"{result.total_clusters}, documents {result.documents_loaded}/"
            f"{result.total_documents}, tokens {result.total_tokens_used:,} "
            f"({result.context_window_utilization:.1f}%)"
        )
        for message in result.warnings:
            console.print(f"  [yellow]{message}[/yellow]")
        for message in result.errors:
            console.print(f"  [red]{message}[/red]")

    budgeter = container.resolve("budgeter")
    console.print(budgeter.build_context_for_document(doc_type, related or None), markup=False)

    analysis = budgeter.analyze_document_context(doc_type)
    console.rule("analysis")
    console.print(f"  Tokens: {analysis.total_tokens:,} ({analysis.utilization_percentage:.1f}%)")
    console.print(f"  Included: {', '.join(analysis.included_contexts) or 'none'}")
    for rec in analysis.recommendations:
        console.print(f"  [yellow]{rec}[/yellow]")


@app.command()
def generate(
    doc_type: str,
    prompt: str = typer.Option(..., "--prompt", help="What the document should contain"),
    system: str = typer.Option(
        "You are an expert business analyst writing project documentation in markdown.",
        "--system",
    ),
    docs_dir: Path | None = typer.Option(None, "--docs-dir"),  # noqa: B008
    summary: Path | None = typer.Option(None, "--summary"),  # noqa: B008
    max_tokens: int = typer.Option(4000, "--max-tokens"),
    output: Path | None = typer.Option(None, "--output", "-o"),  # noqa: B008
    config_path: Path = typer.Option(Path("config.toml"), "--config"),  # noqa: B008
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Generate DOC_TYPE through the provider fallback chain."""
    cfg = _load(config_path, verbose)
    container = build_container(cfg)
    try:
        _prime_budgeter(container, docs_dir, summary)
    except ContextStoreError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=1) from None

    generator = container.resolve("generator")
    try:
        doc = asyncio.run(generator.generate(doc_type, system, prompt, max_tokens=max_tokens))
    except NoProvidersAvailableError as exc:
        console.print(f"[red]No providers available:[/red] {exc.message}")
        raise typer.Exit(code=1) from None

    if doc is None:
        console.print("[yellow]Provider returned no content.[/yellow]")
        raise typer.Exit(code=1)

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(doc.content, encoding="utf-8")
        console.print(f"[green]Wrote {output}[/green]")
    else:
        console.print(doc.content, markup=False)
    console.print(
        f"[dim]provider={doc.provider} tokens={doc.estimated_tokens} "
        f"time={doc.response_time_ms:.0f}ms[/dim]"
    )


if __name__ == "__main__":
    app()
