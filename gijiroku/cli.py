"""Command line interface for gijiroku."""

from __future__ import annotations

import asyncio
import json
import logging
import mimetypes
from dataclasses import asdict
from pathlib import Path
from typing import Any, Coroutine, Dict, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from . import config as config_mod
from .config import ConfigError
from .errors import GijirokuError
from .extractor import extract
from .health import check_providers
from .minutes import generate_minutes, generate_minutes_with_fallback
from .models import AudioRecord, MinutesRecord, TranscriptionRequest
from .pipeline import process_recording
from .providers import AI, TRANSCRIPTION, list_providers
from .storage import RecordStore
from .transcriber import transcribe as transcribe_request

app = typer.Typer(add_completion=False, help="Turn meeting recordings into structured minutes.")

T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except GijirokuError as exc:
        typer.secho(f"{exc.kind}: {exc}", fg=typer.colors.RED, err=True)
        if exc.details:
            typer.secho(json.dumps(exc.details, ensure_ascii=False, default=str), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _load_config() -> config_mod.Config:
    try:
        return config_mod.load_config()
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


def _store(cfg: config_mod.Config) -> RecordStore:
    return RecordStore(config_mod.store_path(cfg))


def _echo_minutes(minutes: MinutesRecord) -> None:
    typer.secho(f"Meeting: {minutes.meeting_name}", fg=typer.colors.BLUE)
    typer.echo(f"Date: {minutes.date}")
    typer.echo(f"Participants: {minutes.participants}")
    typer.echo(f"Agenda: {minutes.agenda}")
    typer.secho("\nMain points:", fg=typer.colors.GREEN)
    for point in minutes.main_points:
        typer.echo(f"  - {point}")
    if not minutes.main_points:
        typer.echo("  (none)")
    typer.secho("\nDecisions:", fg=typer.colors.GREEN)
    typer.echo(minutes.decisions)
    typer.secho("\nAction items:", fg=typer.colors.GREEN)
    typer.echo(minutes.todos)


def _echo_record(record: AudioRecord) -> None:
    typer.secho(f"Record {record.id} ({record.file_name})", fg=typer.colors.BLUE)
    typer.echo(f"Created: {record.created_at:%Y-%m-%d %H:%M}\n")
    _echo_minutes(record.minutes)
    typer.echo("\nTranscript:\n" + record.transcript)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)."),
) -> None:
    if version:
        typer.echo(f"gijiroku v{__version__}")
        raise typer.Exit()

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command()
def transcribe(
    audio: Path = typer.Argument(..., exists=True, readable=True, help="Path to the audio file."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Transcription provider id."),
    language: Optional[str] = typer.Option(None, "--language", "-l", help="Language hint passed to the provider."),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Use this key instead of the configured one."),
    model: Optional[str] = typer.Option(None, "--model", help="Provider model override."),
    region: Optional[str] = typer.Option(None, "--region", help="Azure region."),
) -> None:
    """Transcribe an audio file and print the text."""

    cfg = _load_config()
    request = TranscriptionRequest(
        audio_bytes=audio.read_bytes(),
        mime_type=mimetypes.guess_type(audio.name)[0] or "application/octet-stream",
        language=language or cfg.language,
        provider_id=provider or cfg.transcription_provider,
        api_key=api_key,
        file_name=audio.name,
        model=model,
        region=region,
    )
    result = _run(transcribe_request(request, cfg))
    if not result.text:
        typer.secho("The provider returned an empty transcript.", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=1)
    typer.echo(result.text)


@app.command()
def minutes(
    transcript: Path = typer.Argument(..., exists=True, readable=True, help="Text file holding the transcript."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="AI provider id."),
    language: Optional[str] = typer.Option(None, "--language", "-l", help="Minutes language (ja or en)."),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Use this key instead of the configured one."),
    fallback: bool = typer.Option(True, "--fallback/--no-fallback", help="Try other AI providers on failure."),
    raw: bool = typer.Option(False, "--raw", help="Print the model's text instead of the structured minutes."),
) -> None:
    """Generate minutes from an existing transcript."""

    cfg = _load_config()
    text = transcript.read_text(encoding="utf-8")
    lang = language or cfg.language
    chosen = provider or cfg.ai_provider
    if fallback:
        draft = _run(generate_minutes_with_fallback(text, chosen, cfg, user_key=api_key, language=lang))
    else:
        draft = _run(generate_minutes(text, chosen, cfg, user_key=api_key, language=lang))

    if raw:
        typer.echo(draft.text)
        return
    _echo_minutes(extract(draft.text, language=lang))
    typer.secho(f"\nGenerated by {draft.provider_id} ({draft.model}).", fg=typer.colors.BLUE)
    if draft.fallback_reason:
        typer.secho(f"AI providers failed: {draft.fallback_reason}", fg=typer.colors.YELLOW)


@app.command()
def process(
    audio: Path = typer.Argument(..., exists=True, readable=True, help="Path to the audio file."),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Transcription provider id."),
    ai_provider: Optional[str] = typer.Option(None, "--ai-provider", "-a", help="AI provider id."),
    language: Optional[str] = typer.Option(None, "--language", "-l", help="Language of the meeting."),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="Key for the transcription provider."),
    ai_api_key: Optional[str] = typer.Option(None, "--ai-api-key", help="Key for the AI provider."),
    region: Optional[str] = typer.Option(None, "--region", help="Azure region."),
    save: bool = typer.Option(True, "--save/--no-save", help="Keep the result in the local library."),
) -> None:
    """Transcribe a recording, generate minutes and store the result."""

    cfg = _load_config()
    store = _store(cfg) if save else None
    record = _run(
        process_recording(
            audio.read_bytes(),
            audio.name,
            cfg,
            store=store,
            mime_type=mimetypes.guess_type(audio.name)[0] or "application/octet-stream",
            transcription_provider=provider,
            ai_provider=ai_provider,
            api_key=api_key,
            ai_api_key=ai_api_key,
            language=language,
            region=region,
        )
    )
    _echo_record(record)
    if save:
        typer.secho(f"\nSaved record {record.id}.", fg=typer.colors.BLUE)


@app.command("list")
def list_command() -> None:
    """List stored records, most recent first."""

    records = _store(_load_config()).list()
    if not records:
        typer.echo("No records found. Use `gijiroku process` to create one.")
        return
    header = f"{'ID':<32}  {'File':<30}  {'Meeting':<20}  {'Created':<16}"
    typer.echo(header)
    typer.echo("-" * len(header))
    for record in records:
        created = record.created_at.strftime("%Y-%m-%d %H:%M")
        typer.echo(f"{record.id:<32}  {record.file_name:<30}  {record.minutes.meeting_name:<20}  {created:<16}")


@app.command()
def show(record_id: str = typer.Argument(..., help="Identifier of the record to display.")) -> None:
    """Show a stored record."""

    record = _store(_load_config()).get(record_id)
    if record is None:
        typer.secho(f"Record {record_id} not found", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    _echo_record(record)


@app.command()
def delete(record_id: str = typer.Argument(..., help="Identifier of the record to delete.")) -> None:
    """Delete a stored record."""

    store = _store(_load_config())
    if store.get(record_id) is None:
        typer.secho(f"Record {record_id} not found", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    store.delete(record_id)
    typer.secho(f"Record {record_id} deleted.", fg=typer.colors.BLUE)


@app.command()
def clear(yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation.")) -> None:
    """Delete every stored record."""

    if not yes and not typer.confirm("Delete all stored records?"):
        raise typer.Exit()
    _store(_load_config()).clear()
    typer.secho("All records deleted.", fg=typer.colors.BLUE)


@app.command()
def providers() -> None:
    """List the known transcription and AI providers."""

    table = Table(title="Providers")
    table.add_column("Kind", no_wrap=True)
    table.add_column("ID", no_wrap=True)
    for column in ("Name", "Key", "Cost", "Free quota"):
        table.add_column(column)
    for descriptor in list_providers():
        table.add_row(
            descriptor.kind,
            descriptor.id,
            descriptor.label,
            descriptor.env_var or "-" if descriptor.requires_key else "not required",
            descriptor.cost_tier,
            descriptor.free_quota or "-",
        )
    Console().print(table)


@app.command()
def status(
    kind: Optional[str] = typer.Option(None, "--kind", help="Only check 'transcription' or 'ai' providers."),
) -> None:
    """Check which providers are configured and reachable."""

    cfg = _load_config()
    kinds = [kind] if kind else [TRANSCRIPTION, AI]

    async def _gather() -> Dict[str, list]:
        results = {}
        for k in kinds:
            ids = [d.id for d in list_providers(k)]
            results[k] = await check_providers(ids, k, cfg)
        return results

    results = _run(_gather())
    table = Table(title="Provider status")
    table.add_column("Kind", no_wrap=True)
    table.add_column("ID", no_wrap=True)
    for column in ("Configured", "Key format", "Reachable", "Message"):
        table.add_column(column)
    for k, statuses in results.items():
        for s in statuses:
            table.add_row(
                k,
                s.provider_id,
                "yes" if s.configured else "no",
                "ok" if s.valid_format else (s.warning or "-"),
                "[green]yes[/green]" if s.reachable else "[red]no[/red]",
                s.message,
            )
    Console().print(table)


@app.command()
def config(
    transcription_provider: Optional[str] = typer.Option(None, help="Default transcription provider."),
    ai_provider: Optional[str] = typer.Option(None, help="Default AI provider (gemini, deepseek, openai)."),
    language: Optional[str] = typer.Option(None, help="Default meeting language."),
    azure_region: Optional[str] = typer.Option(None, help="Azure Speech region."),
    whisper_model: Optional[str] = typer.Option(None, help="Whisper model name for offline transcription."),
    request_timeout: Optional[float] = typer.Option(None, help="Timeout (seconds) for transcription and minutes calls."),
    probe_timeout: Optional[float] = typer.Option(None, help="Timeout (seconds) for health checks."),
    store_path: Optional[str] = typer.Option(None, help="Location of the local record database."),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "transcription_provider": transcription_provider,
            "ai_provider": ai_provider,
            "language": language,
            "azure_region": azure_region,
            "whisper_model": whisper_model,
            "request_timeout": request_timeout,
            "probe_timeout": probe_timeout,
            "store_path": store_path,
        }.items()
        if value is not None
    }

    if show or not updates:
        payload = asdict(_load_config())
        for key in payload:
            if key.endswith("_key") and payload[key]:
                payload[key] = "***"
        typer.echo(json.dumps(payload, indent=2, default=str))
        return

    try:
        config_mod.update_config(**updates)
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


@app.command()
def login(
    provider: str = typer.Argument(..., help="Provider whose key to store (openai, gemini, deepseek, assemblyai, azure)."),
    key: Optional[str] = typer.Option(None, "--key", help="API key.", prompt=True, hide_input=True),
) -> None:
    """Persist a server-side API key for a provider."""

    field = {
        "openai": "openai_api_key",
        "gemini": "gemini_api_key",
        "deepseek": "deepseek_api_key",
        "assemblyai": "assemblyai_api_key",
        "azure": "azure_speech_key",
    }.get(provider)
    if field is None:
        typer.secho(f"Unknown provider: {provider}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    try:
        config_mod.update_config(**{field: key or None})
    except ConfigError as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.secho(f"Key for {provider} stored.", fg=typer.colors.BLUE)


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Address to bind."),
    port: int = typer.Option(8000, help="Port to listen on."),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes."),
) -> None:  # pragma: no cover - starts a server
    """Run the HTTP API."""

    import uvicorn

    logging.getLogger(__name__).info("Starting API server on %s:%d", host, port)
    uvicorn.run("gijiroku.api:app", host=host, port=port, reload=reload, log_level="info")


if __name__ == "__main__":  # pragma: no cover
    app()
