"""
CLI interface for hybrid memory.

Usage:
    recall ingest "Decided to ship on Friday" --kind decision
    recall search "ship date"
    recall get 3f2a...
"""

import asyncio
import json
import os
import shutil
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from typing_extensions import Annotated

from .api import MemoryStore
from .errors import ConfigError, NotFoundError, QueryError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import MemoryItem, QueryResult, SourceKind

T = TypeVar("T")

# Set RECALL_VERBOSE=1 to enable debug mode via environment
if os.environ.get("RECALL_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"recall {version('recall-memory')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="recall",
    help="Hybrid keyword + semantic memory for assistant recall.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="RECALL_STORE_PATH",
        help="Path to the store directory (default: ~/.recall/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Hybrid keyword + semantic memory for assistant recall."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

LimitOption = Annotated[
    Optional[int],
    typer.Option(
        "--limit", "-n",
        help="Maximum results to return (default from config)"
    )
]

EmbeddingOption = Annotated[
    Optional[str],
    typer.Option(
        "--embedding", "-e",
        help="Precomputed embedding as a JSON array of numbers"
    )
]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _output_width() -> int:
    """Terminal width for text truncation. Use generous default when not a TTY."""
    if not sys.stdout.isatty():
        return 200
    return shutil.get_terminal_size((120, 24)).columns


def _parse_meta(meta: Optional[list[str]]) -> dict[str, str]:
    """Parse key=value metadata list to dict."""
    if not meta:
        return {}
    parsed = {}
    for entry in meta:
        if "=" not in entry:
            typer.echo(f"Error: Invalid metadata format '{entry}'. Use key=value", err=True)
            raise typer.Exit(1)
        k, v = entry.split("=", 1)
        parsed[k] = v
    return parsed


def _parse_embedding(raw: Optional[str]) -> Optional[list[float]]:
    if raw is None:
        return None
    try:
        values = json.loads(raw)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: --embedding is not valid JSON: {e}", err=True)
        raise typer.Exit(1)
    if not isinstance(values, list) or not all(
        isinstance(v, (int, float)) and not isinstance(v, bool) for v in values
    ):
        typer.echo("Error: --embedding must be a JSON array of numbers", err=True)
        raise typer.Exit(1)
    return [float(v) for v in values]


def _run(action: Callable[[MemoryStore], Awaitable[T]]) -> T:
    """Open the store, run one async action, close the store."""

    async def _main() -> T:
        async with MemoryStore(_store_override) as memory:
            return await action(memory)

    try:
        return asyncio.run(_main())
    except (QueryError, ConfigError, NotFoundError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _format_item(item: MemoryItem) -> str:
    date = item.created_at.astimezone().strftime("%Y-%m-%d %H:%M")
    head = f"{item.id}  {date}  [{item.source_kind.value}]"
    width = max(_output_width() - len(head) - 2, 20)
    text = " ".join(item.text.split())
    if len(text) > width:
        text = text[:width - 3] + "..."
    return f"{head}  {text}"


def _format_result(result: QueryResult) -> str:
    line = f"{result.score:.3f} {result.matched_by.value:<8} "
    if result.item is not None:
        return line + _format_item(result.item)
    return line + result.item_id


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def ingest(
    text: Annotated[str, typer.Argument(help="Text to remember ('-' reads stdin)")],
    kind: Annotated[str, typer.Option(
        "--kind", "-k",
        help="Source kind: " + ", ".join(k.value for k in SourceKind),
    )] = SourceKind.NOTE.value,
    meta: Annotated[Optional[list[str]], typer.Option(
        "--meta", "-m",
        help="Metadata as key=value (repeatable)",
    )] = None,
    supersedes: Annotated[Optional[str], typer.Option(
        "--supersedes",
        help="ID of an earlier item this one corrects",
    )] = None,
    embedding: EmbeddingOption = None,
):
    """Remember a piece of text."""
    if text == "-":
        text = sys.stdin.read()
    metadata = _parse_meta(meta)
    vector = _parse_embedding(embedding)

    item_id = _run(lambda m: m.ingest(
        text, kind, metadata, vector, supersedes=supersedes,
    ))
    if _json_output:
        typer.echo(json.dumps({"id": item_id}))
    else:
        typer.echo(item_id)


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query text")] = "",
    limit: LimitOption = None,
    kind: Annotated[Optional[list[str]], typer.Option(
        "--kind", "-k",
        help="Only items of this source kind (repeatable)",
    )] = None,
    embedding: EmbeddingOption = None,
    all_versions: Annotated[bool, typer.Option(
        "--include-superseded",
        help="Also show items that have been corrected by later ones",
    )] = False,
):
    """
    Find items by hybrid search (keyword + semantic).

    Without --embedding this is a keyword (BM25) search.
    """
    vector = _parse_embedding(embedding)
    if not query.strip() and vector is None:
        typer.echo("Error: provide a query or --embedding", err=True)
        raise typer.Exit(1)

    results = _run(lambda m: m.hybrid_search(
        query, vector, limit, source_kinds=kind, include_superseded=all_versions,
    ))
    if _json_output:
        typer.echo(json.dumps([r.to_dict() for r in results], indent=2))
    elif not results:
        typer.echo("No results.")
    else:
        for r in results:
            typer.echo(_format_result(r))


@app.command()
def get(
    id: Annotated[str, typer.Argument(help="Item ID")],
):
    """Show one item by ID."""
    item = _run(lambda m: m.get(id))
    if _json_output:
        typer.echo(json.dumps(item.to_dict(), indent=2))
        return
    typer.echo(f"id: {item.id}")
    typer.echo(f"kind: {item.source_kind.value}")
    typer.echo(f"created: {item.created_at.isoformat()}")
    for k, v in sorted(item.metadata.items()):
        typer.echo(f"{k}: {v}")
    typer.echo("")
    typer.echo(item.text)


@app.command()
def delete(
    id: Annotated[list[str], typer.Argument(help="ID(s) of item(s) to delete")],
):
    """Delete item(s) from the store and both indexes."""

    async def _delete_all(memory: MemoryStore) -> dict[str, bool]:
        return {i: await memory.delete(i) for i in id}

    deleted = _run(_delete_all)
    if _json_output:
        typer.echo(json.dumps(deleted))
        return
    for item_id, existed in deleted.items():
        typer.echo(f"Deleted {item_id}" if existed else f"Not found: {item_id}")


@app.command()
def purge():
    """Delete items older than the configured retention horizon."""
    purged = _run(lambda m: m.purge_expired())
    if _json_output:
        typer.echo(json.dumps(purged))
    else:
        typer.echo(f"Purged {len(purged)} item(s)")


@app.command()
def stats():
    """Show item counts, index size and timings."""
    result = _run(lambda m: m.stats())
    data = result.to_dict()
    if _json_output:
        typer.echo(json.dumps(data, indent=2))
        return
    for k, v in data.items():
        typer.echo(f"{k}: {v}")


@app.command()
def config():
    """Show the store configuration."""
    from .config import load_or_create_config

    try:
        cfg = load_or_create_config(_store_override)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    data = {
        "path": str(cfg.path),
        "embedding_dimension": cfg.embedding_dimension,
        "k1": cfg.k1,
        "b": cfg.b,
        "alpha": cfg.alpha,
        "default_top_k": cfg.default_top_k,
        "candidate_multiplier": cfg.candidate_multiplier,
        "retention_days": cfg.retention_days,
    }
    if _json_output:
        typer.echo(json.dumps(data, indent=2))
        return
    for k, v in data.items():
        typer.echo(f"{k}: {v}")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="recall CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
