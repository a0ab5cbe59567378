from __future__ import annotations
import asyncio
from pathlib import Path
from typing import List, Optional
import typer
from rich.console import Console
from rich.table import Table

from .bootstrap import build_app
from .backup.s3_backup import BackupError
from .core.compare import compare as run_compare
from .core.context import usage as context_usage
from .core.errors import ProviderError
from .core.usage import UsageLedger
from .secrets.keys import ALL_KEYS

app = typer.Typer(add_completion=False)
console = Console()

DEFAULT_CONFIG = Path("config/default.yaml")
HELP = "Commands: /help, /use <provider>, /providers, /models, /model <name>, /usage, /context, /clear, /exit"


def _ctx(ctx: typer.Context) -> dict:
    if ctx.obj is None or "app" not in ctx.obj:
        config = (ctx.obj or {}).get("config", DEFAULT_CONFIG)
        ctx.obj = {"config": config, "app": build_app(config)}
    return ctx.obj["app"]


def _fail(message: str) -> None:
    typer.echo(message, err=True)
    raise typer.Exit(code=1)


def _providers_table(registry) -> Table:
    table = Table(title="Providers")
    table.add_column("id")
    table.add_column("name")
    table.add_column("configured")
    table.add_column("streaming")
    table.add_column("model")
    for adapter in registry.adapters:
        d = adapter.descriptor
        marker = "* " if d.id == registry.active_id else "  "
        table.add_row(
            marker + d.id,
            d.display_name,
            "yes" if adapter.is_configured() else "no",
            "yes" if d.supports_streaming else "no",
            registry.settings_for(d.id).model_name,
        )
    return table


def _usage_table(usage: UsageLedger) -> Table:
    table = Table(title="Usage")
    for col in ("provider", "requests", "errors", "input", "output", "avg ms"):
        table.add_column(col)
    rows = usage.providers()
    for pid, entry in sorted(rows.items()):
        avg = entry.average_latency_ms
        table.add_row(pid, str(entry.requests), str(entry.errors), str(entry.input_tokens),
                      str(entry.output_tokens), f"{avg:.0f}" if avg is not None else "-")
    total = usage.session_total()
    table.add_row("total", str(total.requests), str(total.errors), str(total.input_tokens),
                  str(total.output_tokens), "")
    return table


async def _stream_reply(session, text: str) -> None:
    gen = session.run_turn_stream(text)
    try:
        async for piece in gen:
            print(piece, end="", flush=True)
    finally:
        await gen.aclose()
    print("")


def _repl(app_ctx: dict) -> None:
    registry = app_ctx["registry"]
    session = app_ctx["session"]
    usage = app_ctx["usage"]

    with asyncio.Runner() as runner:
        print(f"llmgate chat ({registry.active_id}). Type /help for commands. Ctrl+C to quit.")
        while True:
            try:
                user_input = input(f"{registry.active_id}> ").strip()
            except (EOFError, KeyboardInterrupt):
                print("\nBye.")
                return

            if not user_input:
                continue

            if user_input in ("/exit", "/quit"):
                print("Bye.")
                return

            if user_input == "/help":
                print(HELP)
                continue

            if user_input == "/providers":
                console.print(_providers_table(registry))
                continue

            if user_input.startswith("/use"):
                target = user_input[len("/use"):].strip()
                try:
                    registry.set_active(target)
                except KeyError:
                    print(f"Unknown provider '{target}'. Known: {', '.join(registry.ids())}")
                    continue
                if registry.active.descriptor.dynamic_models:
                    runner.run(registry.refresh_models(target))
                print(f"Using {target} ({registry.settings.model_name}).")
                continue

            if user_input == "/models":
                current = registry.settings.model_name
                for name in registry.models_for(registry.active_id):
                    print(("* " if name == current else "  ") + name)
                continue

            if user_input == "/model" or user_input.startswith("/model "):
                name = user_input[len("/model"):].strip()
                if not name:
                    print(f"Current model: {registry.settings.model_name}. Usage: /model <name>")
                    continue
                registry.update_settings(model_name=name)
                print(f"Model set to {name}.")
                continue

            if user_input == "/usage":
                console.print(_usage_table(usage))
                continue

            if user_input == "/context":
                snap = context_usage(session.history, registry.settings.model_name)
                print(f"{snap.used_tokens}/{snap.limit} tokens ({snap.fraction:.0%})")
                continue

            if user_input == "/clear":
                session.clear()
                print("History cleared.")
                continue

            # Normal turn
            try:
                if registry.settings.use_streaming and registry.active.descriptor.supports_streaming:
                    runner.run(_stream_reply(session, user_input))
                else:
                    result = runner.run(session.run_turn(user_input))
                    print(result.content)
            except KeyboardInterrupt:
                print("\n[stream interrupted]")
            except ProviderError as e:
                print(f"\n[{e.provider or 'error'}] {e.message}")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context, config: Path = typer.Option(DEFAULT_CONFIG, "--config", "-c")):
    """Talk to several AI backends through one gateway."""
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        _repl(_ctx(ctx))


@app.command()
def chat(ctx: typer.Context):
    """Interactive chat with the active backend."""
    _repl(_ctx(ctx))


@app.command()
def providers(ctx: typer.Context):
    """List registered backends and whether they have credentials."""
    console.print(_providers_table(_ctx(ctx)["registry"]))


@app.command()
def models(ctx: typer.Context, provider: Optional[str] = typer.Argument(None)):
    """List models for a backend (the active one by default)."""
    registry = _ctx(ctx)["registry"]
    pid = provider or registry.active_id
    try:
        adapter = registry.get(pid)
    except KeyError:
        _fail(f"Unknown provider '{pid}'.")
    names = asyncio.run(registry.refresh_models(pid)) if adapter.descriptor.dynamic_models else registry.models_for(pid)
    current = registry.settings_for(pid).model_name
    for name in names:
        typer.echo(("* " if name == current else "  ") + name)


@app.command()
def compare(
    ctx: typer.Context,
    prompt: str,
    provider: List[str] = typer.Option(None, "--provider", "-p", help="Repeat for each backend; default: all configured."),
):
    """Send one prompt to several backends and rank them by latency."""
    app_ctx = _ctx(ctx)
    registry = app_ctx["registry"]
    ids = list(provider) if provider else [a.descriptor.id for a in registry.configured()]
    try:
        results = asyncio.run(run_compare(registry, prompt, ids, usage=app_ctx["usage"]))
    except (ValueError, KeyError) as e:
        _fail(str(e).strip("'\""))

    table = Table(title="Compare")
    for col in ("rank", "provider", "model", "ms", "tokens", "reply"):
        table.add_column(col)
    for r in results:
        reply = r.content if r.ok else f"error: {r.error}"
        tokens = str(r.total_tokens) if r.total_tokens is not None else "-"
        table.add_row(str(r.rank), r.provider_id, r.model, f"{r.latency_ms:.0f}", tokens, reply)
    console.print(table)


def _check_key(key: str) -> None:
    if key not in ALL_KEYS:
        _fail(f"Unknown key '{key}'. Known keys: {', '.join(ALL_KEYS)}")


@app.command("set-key")
def set_key(ctx: typer.Context, key: str, value: str = typer.Option(..., prompt=True, hide_input=True)):
    """Store a credential in the first writable secret store."""
    _check_key(key)
    if not _ctx(ctx)["secrets"].save(key, value):
        _fail("No writable secret store accepted the key (env is read-only).")
    typer.echo(f"Saved {key}.")


@app.command("delete-key")
def delete_key(ctx: typer.Context, key: str):
    """Remove a credential from every writable secret store."""
    _check_key(key)
    if not _ctx(ctx)["secrets"].delete(key):
        _fail(f"Could not delete {key}.")
    typer.echo(f"Deleted {key}.")


@app.command()
def backup(ctx: typer.Context, source: Path):
    """Encrypt a file and upload it to the configured S3 bucket."""
    client = _ctx(ctx)["backup"]
    try:
        key = asyncio.run(client.backup(source.read_bytes()))
    except (ProviderError, BackupError) as e:
        _fail(str(e))
    typer.echo(f"Uploaded {key}.")


@app.command()
def restore(ctx: typer.Context, target: Path):
    """Download and decrypt the newest backup into a file."""
    client = _ctx(ctx)["backup"]
    try:
        data = asyncio.run(client.restore_latest())
    except (ProviderError, BackupError) as e:
        _fail(str(e))
    target.write_bytes(data)
    typer.echo(f"Restored {len(data)} bytes to {target}.")
