"""CLI entrypoint for scope memory."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from scope_memory.core.config import Settings, get_settings
from scope_memory.core.errors import ScopeMemoryError
from scope_memory.core.logging import configure_logging
from scope_memory.semantic_memory import SemanticMemory

app = typer.Typer(name="scopemem", help="Per-scope semantic memory command-line interface")


def _memory(scope_id: str, root: Optional[Path]) -> tuple[SemanticMemory, Settings]:
    settings = get_settings()
    root_dir = root.expanduser() if root else settings.root_dir
    config = settings.semantic_config().model_copy(update={"enabled": True})
    return SemanticMemory(root_dir, scope_id, config=config), settings


def _fail(exc: ScopeMemoryError) -> None:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
) -> None:
    configure_logging("DEBUG" if verbose else "WARNING", use_json=json_logs)


@app.command()
def sync(
    scope_id: str = typer.Argument(..., help="Scope identifier"),
    root: Optional[Path] = typer.Option(None, "--root", help="Override the storage root"),
) -> None:
    """Index the scope's markdown files and transcript."""
    memory, _ = _memory(scope_id, root)
    try:
        stats = memory.sync()
    except ScopeMemoryError as exc:
        _fail(exc)
    finally:
        memory.close()
    typer.echo(json.dumps(stats.to_dict() if stats else {}, indent=2))


@app.command()
def search(
    scope_id: str = typer.Argument(..., help="Scope identifier"),
    q: str = typer.Argument(..., help="Query text"),
    k: int = typer.Option(5, "--k", help="Number of results to return"),
    root: Optional[Path] = typer.Option(None, "--root", help="Override the storage root"),
) -> None:
    """Hybrid search over a scope's memory."""
    memory, _ = _memory(scope_id, root)
    try:
        results = memory.search(q, k)
    except ScopeMemoryError as exc:
        _fail(exc)
    finally:
        memory.close()
    typer.echo(json.dumps({"query": q, "results": [result.to_dict() for result in results]}, indent=2))


@app.command()
def stats(
    scope_id: str = typer.Argument(..., help="Scope identifier"),
    root: Optional[Path] = typer.Option(None, "--root", help="Override the storage root"),
) -> None:
    """Show file and chunk counts for a scope's store."""
    memory, settings = _memory(scope_id, root)
    try:
        payload = memory.stats().to_dict()
    except ScopeMemoryError as exc:
        _fail(exc)
    finally:
        memory.close()
    payload["embedding_provider"] = settings.embedding_provider
    payload["embedding_model"] = settings.embedding_model
    typer.echo(json.dumps(payload, indent=2))


if __name__ == "__main__":  # pragma: no cover
    app()
