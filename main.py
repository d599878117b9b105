"""Generation Gateway — Entry Point.

Usage:
    # One text generation (cached, retried, cost-tracked)
    python main.py generate --model gemini-2.5-flash --prompt "Write a tagline for a water bottle"

    # Image / video generation with extra params
    python main.py generate --kind image --model imagen-4.0-generate-001 --prompt "..." --params '{"number_of_images": 2}'

    # Fan out a JSON list of requests
    python main.py batch --input requests.json

    # Health checks, persisted spend, pricing lookup
    python main.py health
    python main.py usage --limit 20
    python main.py pricing veo-3.0-fast-generate-001

    # Run the web server
    python main.py serve
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

import config
from pipeline import storage
from pipeline.client import GenerationClient, build_client
from pipeline.costs import default_tracker, get_model_pricing, match_pricing_prefix
from pipeline.errors import GenerationError
from pipeline.health import build_default_checker
from schemas.generation import GenerationKind, GenerationRequest, GenerationResult

console = Console()
logger = logging.getLogger(__name__)


def setup_logging():
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _open_client() -> GenerationClient | None:
    """Build the client and persist every ledger entry to SQLite.

    Returns None (after printing why) when the provider can't be built.
    """
    try:
        client = build_client()
    except GenerationError as e:
        console.print(f"[red]Client could not be built:[/red] {e}")
        return None
    storage.init_db()
    default_tracker.add_listener(storage.save_usage_entry)
    return client


def _print_result(result: GenerationResult):
    lines = [
        f"[bold]{result.provider}/{result.model}[/bold] [{result.kind.value}]",
        f"cost: ${result.cost:.4f}   attempts: {result.attempts}   "
        f"latency: {result.latency_seconds:.2f}s   cached: {'yes' if result.cached else 'no'}",
    ]
    if result.text:
        lines.append("")
        lines.append(result.text)
    for artifact in result.artifacts:
        lines.append(f"[cyan]{artifact}[/cyan]")
    console.print(Panel("\n".join(lines), border_style="green"))


def _parse_params(raw: str | None) -> dict:
    if not raw:
        return {}
    try:
        params = json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[red]--params is not valid JSON: {e}[/red]")
        sys.exit(1)
    if not isinstance(params, dict):
        console.print("[red]--params must be a JSON object[/red]")
        sys.exit(1)
    return params


def run_generate(args: argparse.Namespace) -> int:
    try:
        request = GenerationRequest(
            kind=args.kind,
            model=args.model or config.DEFAULT_MODEL,
            prompt=args.prompt or "",
            input_uri=args.input_uri or "",
            params=_parse_params(args.params),
            use_cache=not args.no_cache,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid request:[/red] {e}")
        return 1

    client = _open_client()
    if client is None:
        return 1
    try:
        result = client.generate(request)
    except GenerationError as e:
        console.print(f"[red]Generation failed:[/red] {e}")
        return 1
    finally:
        client.close()
    _print_result(result)
    return 0


def run_batch(args: argparse.Namespace) -> int:
    path = Path(args.input)
    if not path.exists():
        console.print(f"[red]Input file not found: {path}[/red]")
        return 1
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"[red]Batch input is not valid JSON: {e}[/red]")
        return 1
    if not isinstance(raw, list):
        console.print("[red]Batch input must be a JSON list of requests[/red]")
        return 1
    try:
        requests = [GenerationRequest.model_validate(item) for item in raw]
    except ValidationError as e:
        console.print(f"[red]Invalid request in batch:[/red] {e}")
        return 1

    client = _open_client()
    if client is None:
        return 1
    try:
        results = client.generate_many(requests, max_workers=args.workers)
    finally:
        client.close()

    table = Table(title="Batch Results")
    table.add_column("#", style="dim")
    table.add_column("Model", style="cyan")
    table.add_column("Kind")
    table.add_column("Cost", style="green")
    table.add_column("Status", style="bold")
    failures = 0
    for i, (req, res) in enumerate(zip(requests, results), start=1):
        if isinstance(res, Exception):
            failures += 1
            table.add_row(str(i), req.model, req.kind.value, "-", f"[red]FAILED: {str(res)[:60]}[/red]")
        else:
            status = "[green]OK (cached)[/green]" if res.cached else "[green]OK[/green]"
            table.add_row(str(i), res.model, res.kind.value, f"${res.cost:.4f}", status)
    console.print(table)

    summary = default_tracker.summary()
    console.print(f"  Total: ${summary.total_cost:.4f} across {summary.calls} call(s), saved ${summary.total_saved:.4f}")
    return 1 if failures else 0


def run_health(args: argparse.Namespace) -> int:
    storage.init_db()
    try:
        client = build_client()
    except GenerationError as e:
        console.print(f"[red]Client could not be built:[/red] {e}")
        return 1
    try:
        report = build_default_checker(client).run()
    finally:
        client.close()

    colours = {"ok": "green", "degraded": "yellow", "fail": "red"}
    table = Table(title=f"Health: [{colours[report.status]}]{report.status.upper()}[/{colours[report.status]}]")
    table.add_column("Check", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Critical")
    table.add_column("Latency")
    table.add_column("Details")
    for check in report.checks:
        colour = colours[check.status]
        detail = check.error or ", ".join(f"{k}={v}" for k, v in check.details.items())
        table.add_row(
            check.name,
            f"[{colour}]{check.status}[/{colour}]",
            "yes" if check.critical else "no",
            f"{check.latency_seconds * 1000:.1f}ms",
            detail[:80],
        )
    console.print(table)
    return 1 if report.status == "fail" else 0


def run_usage(args: argparse.Namespace) -> int:
    storage.init_db()
    totals = storage.usage_totals()
    table = Table(title="Persisted Usage by Model")
    table.add_column("Model", style="cyan")
    table.add_column("Calls")
    table.add_column("Cache hits")
    table.add_column("Cost", style="green")
    table.add_column("Saved", style="green")
    for model, row in totals["by_model"].items():
        table.add_row(model, str(row["calls"]), str(row["cache_hits"]), f"${row['cost']:.4f}", f"${row['saved']:.4f}")
    console.print(table)
    console.print(f"  Total: ${totals['total_cost']:.4f} across {totals['calls']} call(s), saved ${totals['total_saved']:.4f}")

    if args.limit > 0:
        recent = storage.list_usage_entries(limit=args.limit, model=args.model)
        recent_table = Table(title="Recent Entries")
        recent_table.add_column("When", style="dim")
        recent_table.add_column("Model", style="cyan")
        recent_table.add_column("Kind")
        recent_table.add_column("Cost", style="green")
        for row in recent:
            label = f"${row['cost']:.4f}" if not row["cached"] else f"cached (saved ${row['saved']:.4f})"
            recent_table.add_row(row["created_at"], row["model"], row["kind"], label)
        console.print(recent_table)
    return 0


def run_pricing(args: argparse.Namespace) -> int:
    prefix = match_pricing_prefix(args.model)
    pricing = get_model_pricing(args.model)
    table = Table(title=f"Pricing for {args.model}")
    table.add_column("Unit", style="cyan")
    table.add_column("USD", style="green")
    for unit, price in pricing.model_dump().items():
        if price:
            table.add_row(unit, f"{price:g}")
    console.print(table)
    if prefix:
        console.print(f"  [dim]Matched prefix:[/dim] {prefix}")
    else:
        console.print("  [yellow]No pricing entry — fallback prices apply[/yellow]")
    return 0


def run_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("server:app", host=args.host, port=args.port, log_level="info")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Generation Gateway — resilient, cached, cost-tracked generation calls",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # -- generate command --
    gen = subparsers.add_parser("generate", help="Run one generation request")
    gen.add_argument(
        "--kind", "-k",
        default=GenerationKind.TEXT.value,
        choices=[k.value for k in GenerationKind],
        help="Generation kind (default: text)",
    )
    gen.add_argument("--model", "-m", help=f"Model name (default: {config.DEFAULT_MODEL})")
    gen.add_argument("--prompt", "-p", help="Prompt / source text")
    gen.add_argument("--input-uri", help="Source media URI (required for transcription)")
    gen.add_argument("--params", help="Extra params as a JSON object")
    gen.add_argument("--no-cache", action="store_true", help="Bypass the response cache")

    # -- batch command --
    batch = subparsers.add_parser("batch", help="Run a JSON list of requests in parallel")
    batch.add_argument("--input", "-i", required=True, help="Path to JSON list of requests")
    batch.add_argument("--workers", "-w", type=int, default=config.GENERATE_MAX_WORKERS, help="Parallel workers")

    # -- health command --
    subparsers.add_parser("health", help="Run health checks")

    # -- usage command --
    usage = subparsers.add_parser("usage", help="Show persisted spend")
    usage.add_argument("--limit", type=int, default=20, help="Recent entries to list (0 = none)")
    usage.add_argument("--model", help="Only list entries for this model")

    # -- pricing command --
    pricing = subparsers.add_parser("pricing", help="Show the pricing applied to a model")
    pricing.add_argument("model", help="Model name")

    # -- serve command --
    serve = subparsers.add_parser("serve", help="Run the web server")
    serve.add_argument("--host", default=config.SERVER_HOST)
    serve.add_argument("--port", type=int, default=config.SERVER_PORT)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    setup_logging()

    handlers = {
        "generate": run_generate,
        "batch": run_batch,
        "health": run_health,
        "usage": run_usage,
        "pricing": run_pricing,
        "serve": run_serve,
    }
    sys.exit(handlers[args.command](args))


if __name__ == "__main__":
    main()
