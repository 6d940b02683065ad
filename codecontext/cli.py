"""Typer-based CLI for codecontext cross-file code context."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from . import __version__, config_manager
from .embeddings import EMBEDDING_MODELS, EmbeddingError
from .graph_builder import GraphBuildError
from .models import RankedResult, RetrievalOptions, SearchFilters
from .orchestrator import ContextOrchestrator
from .retrieval import confidence_band, format_context
from .storage import GraphCache, SemanticIndexCache
from .symbol_resolver import resolve_symbol

console = Console()

app = typer.Typer(
    help="🔎 codecontext: cross-file code context from a dependency graph and a semantic index.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
cache_app = typer.Typer(help="🗑  Manage on-disk caches", no_args_is_help=True)
config_app = typer.Typer(help="⚙  Show or change configuration", no_args_is_help=True)
app.add_typer(cache_app, name="cache")
app.add_typer(config_app, name="config")

_BAND_COLORS = {"high": "green", "medium": "yellow", "low": "red"}


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        typer.echo(f"codecontext v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Log pipeline details to stderr."),
):
    """codecontext: explain a line of code with the definitions it depends on."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


def _orchestrator(project: Path) -> ContextOrchestrator:
    try:
        return ContextOrchestrator(str(project))
    except (ValueError, EmbeddingError) as exc:
        raise typer.BadParameter(str(exc))


def _load_graph(orchestrator: ContextOrchestrator, rebuild: bool = False):
    try:
        return orchestrator.load_graph(force_rebuild=rebuild)
    except GraphBuildError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=1)


# ===================================================================
# Graph commands
# ===================================================================

@app.command("graph")
def graph_command(
    project: Path = typer.Argument(Path("."), exists=True, file_okay=False, help="Project root."),
    rebuild: bool = typer.Option(False, "--rebuild", help="Ignore the cache and rebuild."),
):
    """Build (or refresh) the dependency graph and show its statistics."""
    orchestrator = _orchestrator(project)
    loaded = _load_graph(orchestrator, rebuild)
    graph = loaded.graph

    source = "cache" if loaded.from_cache else "full build"
    console.print(
        Panel.fit(
            f"[bold]{graph.project_root}[/bold]\n"
            f"{source}, {len(loaded.changed_files)} files parsed, {loaded.duration_ms} ms",
            title="[bold cyan]Dependency graph[/bold cyan]",
            border_style="cyan",
        )
    )

    table = Table(show_header=True, show_lines=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Files", str(graph.stats.total_files))
    table.add_row("Symbols", str(graph.stats.total_symbols))
    table.add_row("Imports", str(graph.stats.total_imports))
    for language, count in sorted(graph.stats.language_breakdown.items()):
        table.add_row(f"  {language}", str(count))
    console.print(table)

    errors = [(path, err) for path, rec in sorted(graph.files.items()) for err in rec.parse_errors]
    if errors:
        console.print(f"\n[yellow]⚠ {len(errors)} parse errors[/yellow]")
        for path, err in errors:
            console.print(f"  {path}: {escape(err)}")


@app.command("resolve")
def resolve_command(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File the symbol is used in."),
    symbol: str = typer.Argument(..., help="Identifier to resolve."),
    project: Path = typer.Option(Path("."), "--project", "-p", exists=True, file_okay=False, help="Project root."),
):
    """Show where SYMBOL, as used in FILE, is defined."""
    orchestrator = _orchestrator(project)
    graph = _load_graph(orchestrator).graph
    path = str(file.resolve())
    if path not in graph.files:
        raise typer.BadParameter(f"{file} is not part of the project graph.")

    ref = resolve_symbol(symbol, path, graph)
    color = "green" if ref.confidence >= 1.0 else "yellow" if ref.confidence > 0 else "red"
    console.print(
        f"[bold]{ref.name}[/bold]  kind=[{color}]{ref.kind}[/{color}]  confidence={ref.confidence:.1f}"
    )
    if ref.definition is not None:
        block = ref.definition
        console.print(f"[dim]{ref.definition_file}:{block.start_line}-{block.end_line}[/dim]")
        console.print(block.content, markup=False, highlight=False)


@app.command("context")
def context_command(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Source file."),
    line: int = typer.Argument(..., min=1, help="1-based line number."),
    project: Path = typer.Option(Path("."), "--project", "-p", exists=True, file_okay=False, help="Project root."),
    no_semantic: bool = typer.Option(False, "--no-semantic", help="Skip semantic retrieval."),
    max_results: Optional[int] = typer.Option(None, "--max-results", "-n", min=1, help="Cap semantic results."),
    strict: bool = typer.Option(False, "--strict", help="Drop medium-confidence results."),
    as_json: bool = typer.Option(False, "--json", help="Print the context bundle as JSON."),
):
    """Gather the cross-file context needed to explain LINE of FILE."""
    orchestrator = _orchestrator(project)
    options = RetrievalOptions(max_results=max_results, include_conditional=not strict)
    try:
        bundle = orchestrator.explain_context(
            str(file), line, semantic=not no_semantic, options=options,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc))
    except GraphBuildError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(asdict(bundle), indent=2, default=str))
        return

    console.print(f"[bold cyan]{bundle.file}:{bundle.line_number}[/bold cyan]  {escape(bundle.line.strip())}")
    table = Table(title="\nSymbols on this line", show_header=True)
    table.add_column("Symbol", style="cyan")
    table.add_column("Kind")
    table.add_column("Confidence", justify="right")
    table.add_column("Defined in")
    for ref in bundle.line_context.symbols:
        table.add_row(ref.name, ref.kind, f"{ref.confidence:.1f}", ref.definition_file or "-")
    console.print(table)

    if not bundle.combined:
        console.print("\n[dim]No cross-file context found.[/dim]")
        return
    console.print()
    for result in bundle.combined:
        color = _BAND_COLORS.get(result.confidence_band, "white")
        unit = result.unit
        console.print(
            Panel(
                escape(unit.code),
                title=f"[{color}]{result.origin}[/{color}] {unit.symbol or unit.id} ({result.score:.2f})",
                subtitle=f"{unit.file}:{unit.start_line}-{unit.end_line}",
                border_style=color,
            )
        )
        console.print(f"  [dim]{escape('; '.join(result.match_reasons))}[/dim]")


# ===================================================================
# Semantic commands
# ===================================================================

@app.command("index")
def index_command(
    project: Path = typer.Argument(Path("."), exists=True, file_okay=False, help="Project root."),
    rebuild: bool = typer.Option(False, "--rebuild", help="Ignore cached embeddings."),
    max_units: Optional[int] = typer.Option(None, "--max-units", min=1, help="Embed at most N units."),
):
    """Build or refresh the semantic index of a project."""
    orchestrator = _orchestrator(project)
    loaded = _load_graph(orchestrator)

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console,
    ) as progress:
        task = progress.add_task("[cyan]Embedding code units...", total=None)

        def _advance(done: int, total: int) -> None:
            progress.update(task, completed=done, total=total)

        if rebuild:
            index = orchestrator.semantic.build(loaded.graph, max_units=max_units, on_progress=_advance)
            orchestrator.semantic.cache.save(index)
        else:
            index = orchestrator.semantic.load_or_build(
                loaded.graph,
                changed_files=loaded.changed_files,
                max_units=max_units,
                on_progress=_advance,
            )

    languages = ", ".join(f"{k}: {v}" for k, v in sorted(index.stats.language_breakdown.items()))
    console.print(
        f"[green]✓[/green] Indexed {index.stats.total_units} units "
        f"({index.stats.total_embeddings} embeddings, model {index.model})"
    )
    if languages:
        console.print(f"  [dim]{languages}[/dim]")


@app.command("search")
def search_command(
    query: str = typer.Argument(..., help="Natural-language or code query."),
    project: Path = typer.Option(Path("."), "--project", "-p", exists=True, file_okay=False, help="Project root."),
    top_k: int = typer.Option(5, "--top-k", "-k", min=1, help="Number of results."),
    language: Optional[str] = typer.Option(None, "--language", "-l", help="Only units of this language."),
    min_similarity: float = typer.Option(0.0, "--min-similarity", help="Similarity floor."),
    as_context: bool = typer.Option(False, "--context", help="Print results as prompt-ready context."),
):
    """Search the semantic index for code similar to QUERY."""
    orchestrator = _orchestrator(project)
    loaded = _load_graph(orchestrator)
    index = orchestrator.load_semantic_index(loaded.graph, changed_files=loaded.changed_files)

    try:
        vector = orchestrator.generator.generate_embedding(query)
    except EmbeddingError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=1)
    hits = index.vector_store.search(
        vector, top_k=top_k, filters=SearchFilters(language=language), min_similarity=min_similarity,
    )
    if not hits:
        console.print("[dim]No matches.[/dim]")
        return

    if as_context:
        ranked = [
            RankedResult(
                unit=h.metadata.unit,
                score=h.similarity,
                confidence_band=confidence_band(h.similarity),
                match_reasons=[f"Semantic similarity: {h.similarity:.3f}"],
            )
            for h in hits
        ]
        typer.echo(format_context(ranked))
        return

    table = Table(show_header=True)
    table.add_column("Score", justify="right")
    table.add_column("Symbol", style="cyan")
    table.add_column("Kind")
    table.add_column("Location")
    for hit in hits:
        unit = hit.metadata.unit
        table.add_row(
            f"{hit.similarity:.3f}", unit.symbol or "-", unit.kind,
            f"{unit.file}:{unit.start_line}-{unit.end_line}",
        )
    console.print(table)


# ===================================================================
# Cache commands
# ===================================================================

@cache_app.command("clear")
def cache_clear(
    project: Optional[Path] = typer.Argument(None, help="Project root (omit with --all)."),
    all_projects: bool = typer.Option(False, "--all", help="Clear the caches of every project."),
):
    """Delete cached graphs and semantic indexes."""
    graph_cache = GraphCache()
    semantic_cache = SemanticIndexCache()
    if all_projects:
        removed = graph_cache.clear_all() + semantic_cache.clear_all()
        console.print(f"[green]✓[/green] Removed {removed} cache files.")
        return
    if project is None:
        raise typer.BadParameter("Give a project path or use --all.")

    root = str(project.resolve())
    removed = int(graph_cache.clear(root)) + int(semantic_cache.clear(root))
    if removed:
        console.print(f"[green]✓[/green] Cleared {removed} cache files for {root}.")
    else:
        console.print(f"[dim]No cache for {root}.[/dim]")


# ===================================================================
# Config commands
# ===================================================================

@config_app.command("show")
def config_show():
    """Show the embedding and index configuration."""
    emb = config_manager.load_embedding_config()
    idx = config_manager.load_index_config()

    table = Table(title="Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key in ("model", "name", "endpoint", "batch_size", "batch_delay"):
        if key in emb:
            table.add_row(f"embeddings.{key}", str(emb[key]))
    api_key = emb.get("api_key", "")
    if api_key:
        table.add_row("embeddings.api_key", api_key[:4] + "•" * min(len(api_key) - 4, 12))
    table.add_row("index.max_file_size", str(idx["max_file_size"]))
    table.add_row("index.exclude", ", ".join(idx.get("exclude") or []) or "-")
    console.print(table)
    console.print(f"[dim]{config_manager.CONFIG_FILE}[/dim]")


@config_app.command("set-embedding")
def config_set_embedding(
    model: str = typer.Argument(..., help="Embedding backend: hash, ollama or gemini."),
    endpoint: str = typer.Option("", "--endpoint", "-e", help="Service URL (ollama)."),
    api_key: str = typer.Option("", "--api-key", "-k", help="API key (gemini)."),
    name: str = typer.Option("", "--name", "-m", help="Remote model name."),
    no_validate: bool = typer.Option(False, "--no-validate", help="Skip the connection check."),
):
    """Choose the embedding backend used for the semantic index.

    Examples:
        cctx config set-embedding ollama -m nomic-embed-text
        cctx config set-embedding gemini -k YOUR_API_KEY
    """
    model = model.lower().strip()
    if model not in EMBEDDING_MODELS:
        console.print(f"[red]✗[/red] Unknown model '{model}'. Choose from: {', '.join(EMBEDDING_MODELS)}")
        raise typer.Exit(code=1)
    if model == "gemini" and not api_key:
        raise typer.BadParameter("gemini needs --api-key.")
    if model == "ollama" and not no_validate:
        url = endpoint or config_manager.DEFAULT_EMBEDDING_CONFIGS["ollama"]["endpoint"]
        if not config_manager.validate_ollama_connection(url):
            console.print(f"[yellow]⚠[/yellow] Ollama is not reachable at {url}; saving anyway.")

    if not config_manager.save_embedding_config(model, endpoint=endpoint, api_key=api_key, name=name):
        console.print("[red]✗[/red] Could not write the configuration file.")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Embedding backend set to [bold]{model}[/bold].")
    console.print("  [dim]Existing semantic indexes are rebuilt on next use.[/dim]")


@config_app.command("reset-embedding")
def config_reset_embedding():
    """Return to the offline hash embedding backend."""
    config_manager.clear_embedding_config()
    console.print("[green]✓[/green] Embedding configuration reset to hash.")


if __name__ == "__main__":
    app()
