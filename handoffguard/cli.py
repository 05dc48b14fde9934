"""handoffguard CLI - local nursing handoff structuring with PHI guards."""

from pathlib import Path
from typing import Optional
import asyncio
import json
import logging
import uuid

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .audit import AuditAction, HandoffAuditLog
from .config import Config, get_config, set_config
from .engine.deid_guard import sanitize_structured_session
from .evaluation import EvalRunner, display_eval_report, load_dataset
from .exceptions import HandoffError, PolicyBlockedError
from .pipeline import PipelineOutput, run_handoff_pipeline, transcript_to_raw_segments
from .synthetic import generate_dataset, save_dataset
from .types import HandoverSessionResult
from .vault import (
    HandoffVault,
    SQLiteStorage,
    StorageScope,
    StructuredSessionStore,
    VaultKeyspace,
    default_key_store,
)

# Logs go to stderr so JSON on stdout stays clean
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
)
logger = logging.getLogger("handoffguard")

app = typer.Typer(
    name="handoffguard",
    help="Local nursing handoff structuring with PHI guards",
    no_args_is_help=True,
)

vault_app = typer.Typer(help="Encrypted local storage maintenance")
audit_app = typer.Typer(help="Audit trail inspection")
config_app = typer.Typer(help="Configuration")
app.add_typer(vault_app, name="vault")
app.add_typer(audit_app, name="audit")
app.add_typer(config_app, name="config")

console = Console()


def init_app(data_dir: Optional[Path] = None) -> Config:
    """Initialize application configuration."""
    if data_dir:
        config = Config.load(data_dir / "config.yaml")
        config.data_dir = data_dir
        config.db_path = data_dir / "handoff.db"
        set_config(config)

    config = get_config()
    config.ensure_dirs()
    return config


def open_stores(config: Config):
    """(vault, structured store, audit log) over the configured database."""
    storage = SQLiteStorage(config.db_path)
    scope = StorageScope(config.vault.scope)
    key_storage = SQLiteStorage(config.keystore_path) if config.vault.persist_keys else None

    vault = HandoffVault(
        storage,
        secure_store=default_key_store(config.privacy.privacy_profile, key_storage),
        keyspace=VaultKeyspace.for_scope(scope),
    )
    store = StructuredSessionStore(storage, scope)
    audit = HandoffAuditLog(storage, scope, ttl_ms=config.vault.audit_ttl_ms)
    return vault, store, audit


def _write_json(data, output: Path):
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")


def display_result(output: PipelineOutput) -> None:
    """Patient cards, global top and safety state of a pipeline run."""
    result = output.result

    console.print()
    console.print(f"[bold]Handoff {result.session_id}[/bold] ({result.duty_type.value})")
    console.print("─" * 60)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Patient")
    table.add_column("Summary")
    table.add_column("Todos", justify="right")
    table.add_column("Risks")

    for card in result.patients:
        risks = ", ".join(f"{r.label}({r.level.value})" for r in card.risks) or "-"
        table.add_row(card.alias, card.summary, str(len(card.todos)), risks)

    console.print(table)

    if result.global_top:
        console.print()
        console.print("[bold]Global top:[/bold]")
        for rank, item in enumerate(result.global_top, start=1):
            console.print(f"  {rank}. [{item.badge}] {item.alias} {item.text}")

    if result.ward_events:
        console.print()
        console.print(f"[bold]Ward events:[/bold] {len(result.ward_events)}")
        for event in result.ward_events:
            console.print(f"  - ({event.category.value}) {event.text}")

    safety = result.safety
    style = "green" if safety.phi_safe else "red"
    console.print()
    console.print(f"  Uncertainties: {len(result.uncertainties)}")
    console.print(
        f"  Safety: [{style}]phi_safe={safety.phi_safe}[/{style}] residual={safety.residual_count} "
        f"export={safety.export_allowed} persist={safety.persist_allowed}"
    )
    console.print()


# =============================================================================
# PIPELINE COMMANDS
# =============================================================================

@app.command()
def run(
    transcript: Path = typer.Argument(..., help="Transcript text file (UTF-8)"),
    duty: Optional[str] = typer.Option(None, "--duty", help="day / evening / night"),
    session_id: Optional[str] = typer.Option(None, "--session-id", "-s", help="Session identifier"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write result JSON here"),
    save: bool = typer.Option(False, "--save", help="Persist raw segments (encrypted) and the result"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "-d", help="Data directory"),
):
    """Structure a handoff transcript into patient cards."""
    config = init_app(data_dir)
    _, _, audit = open_stores(config)

    if not transcript.exists():
        console.print(f"[red]Transcript not found: {transcript}[/red]")
        raise typer.Exit(1)

    session_id = session_id or f"session-{uuid.uuid4().hex[:8]}"
    segments = transcript_to_raw_segments(
        transcript.read_text(encoding="utf-8"),
        segment_duration_ms=config.pipeline.segment_duration_ms,
        id_prefix=session_id,
        max_segments=config.pipeline.max_segments,
    )

    try:
        result = run_handoff_pipeline(session_id, duty or config.pipeline.duty_type, segments, config=config)
    except PolicyBlockedError as e:
        audit.append(AuditAction.POLICY_BLOCKED, session_id=session_id, detail=f"mode={config.privacy.execution_mode}")
        console.print(f"[red]Blocked: {e}[/red]")
        raise typer.Exit(1)
    except (HandoffError, ValueError) as e:
        console.print(f"[red]Pipeline failed: {e}[/red]")
        raise typer.Exit(1)

    safety = result.result.safety
    audit.append(
        AuditAction.PIPELINE_RUN,
        session_id=session_id,
        detail=f"segments={len(segments)} patients={len(result.result.patients)} residual={safety.residual_count}",
    )

    display_result(result)

    if output:
        _write_json(result.result.to_dict(), output)
        console.print(f"[green]✓ Result written to {output}[/green]")

    if save:
        _save_session(config, result, segments)


def _save_session(config: Config, output: PipelineOutput, segments) -> None:
    result = output.result
    if not result.safety.persist_allowed:
        console.print("[yellow]Residual PHI detected; nothing was saved[/yellow]")
        raise typer.Exit(1)

    vault, store, audit = open_stores(config)
    raw_saved = asyncio.run(
        vault.save_raw_segments(result.session_id, segments, ttl_ms=config.vault.raw_ttl_ms)
    )
    structured_saved = store.save(result, ttl_ms=config.vault.structured_ttl_ms)

    if not (raw_saved and structured_saved):
        console.print("[red]Failed to save session (storage unavailable)[/red]")
        raise typer.Exit(1)

    audit.append(AuditAction.SESSION_SAVED, session_id=result.session_id, detail=f"patients={len(result.patients)}")
    console.print(f"[green]✓ Session {result.session_id} saved[/green]")
    if config.privacy.privacy_profile == "strict" or not config.vault.persist_keys:
        console.print("[dim]Raw segment key is held in memory only; the raw vault copy is unreadable after exit.[/dim]")


@app.command()
def sanitize(
    path: Path = typer.Argument(..., help="Session result JSON file"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write sanitized JSON here"),
):
    """Sanitize a structured session result and report residual PHI."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        result = HandoverSessionResult.from_dict(data)
    except (OSError, ValueError, KeyError, TypeError) as e:
        console.print(f"[red]Could not read session result: {e}[/red]")
        raise typer.Exit(1)

    sanitized = sanitize_structured_session(result)

    if sanitized.issues:
        table = Table(title="Sanitized fields", show_header=True, header_style="bold")
        table.add_column("Field")
        table.add_column("Pattern")
        for issue in sanitized.issues:
            table.add_row(issue.field, issue.pattern)
        console.print(table)
    else:
        console.print("[green]✓ No PHI patterns found[/green]")

    if output:
        _write_json(sanitized.result.to_dict(), output)
        console.print(f"[green]✓ Sanitized result written to {output}[/green]")

    if sanitized.residual_issues:
        console.print(f"[red]{len(sanitized.residual_issues)} residual issue(s) remain after sanitizing[/red]")
        for issue in sanitized.residual_issues:
            console.print(f"  - {issue.field}: {issue.pattern}")
        raise typer.Exit(1)


# =============================================================================
# VAULT COMMANDS
# =============================================================================

@vault_app.command("list")
def vault_list(
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "-d", help="Data directory"),
):
    """List stored sessions."""
    config = init_app(data_dir)
    vault, store, _ = open_stores(config)

    records = store.list()
    raw_sessions = set(vault.list_sessions())

    if not records and not raw_sessions:
        console.print("[yellow]No stored sessions[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Session")
    table.add_column("Duty")
    table.add_column("Patients", justify="right")
    table.add_column("Raw", justify="center")
    table.add_column("Expires")

    for record in records:
        table.add_row(
            record.id,
            record.result.duty_type.value,
            str(len(record.result.patients)),
            "✓" if record.id in raw_sessions else "-",
            str(record.expires_at),
        )
    for session_id in sorted(raw_sessions - {r.id for r in records}):
        table.add_row(session_id, "-", "-", "✓", "-")

    console.print(table)


@vault_app.command("purge")
def vault_purge(
    all_data: bool = typer.Option(False, "--all", help="Delete every stored session, not only expired ones"),
    confirm: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "-d", help="Data directory"),
):
    """Purge expired (or all) stored data."""
    config = init_app(data_dir)
    vault, store, audit = open_stores(config)

    if not all_data:
        raw = asyncio.run(vault.purge_expired())
        structured = store.purge_expired()
        audit.purge_expired()
        console.print(f"[green]✓ Purged {raw} raw and {structured} structured expired record(s)[/green]")
        return

    if not confirm:
        confirm = typer.confirm("Delete all stored handoff data?")
    if not confirm:
        console.print("[yellow]Cancelled[/yellow]")
        return

    raw = asyncio.run(vault.purge_all())
    structured = store.delete_all()
    audit.append(AuditAction.ALL_DATA_PURGED, detail=f"raw={raw} structured={structured}")
    console.print(f"[green]✓ Deleted {raw} raw and {structured} structured session(s)[/green]")


@vault_app.command("shred")
def vault_shred(
    session_id: str = typer.Argument(..., help="Session to crypto-shred"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "-d", help="Data directory"),
):
    """Crypto-shred one session (ciphertext, key and structured result)."""
    config = init_app(data_dir)
    vault, store, audit = open_stores(config)

    asyncio.run(vault.crypto_shred_session(session_id))
    store.delete(session_id)
    audit.append(AuditAction.SESSION_SHRED, session_id=session_id)
    console.print(f"[green]✓ Session {session_id} shredded[/green]")


# =============================================================================
# AUDIT COMMANDS
# =============================================================================

@audit_app.command("list")
def audit_list(
    limit: int = typer.Option(30, "--limit", "-n", help="Number of events to show"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "-d", help="Data directory"),
):
    """Show recent audit events."""
    config = init_app(data_dir)
    _, _, audit = open_stores(config)

    events = audit.list(limit)
    if not events:
        console.print("[yellow]No audit events[/yellow]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("At")
    table.add_column("Action")
    table.add_column("Session")
    table.add_column("Detail")

    for event in events:
        table.add_row(
            str(event.sequence),
            str(event.at),
            event.action.value,
            event.session_id or "-",
            event.detail or "",
        )

    console.print(table)


@audit_app.command("verify")
def audit_verify(
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "-d", help="Data directory"),
):
    """Verify the audit hash chain."""
    config = init_app(data_dir)
    _, _, audit = open_stores(config)

    result = audit.verify_chain()
    if result["valid"]:
        console.print(f"[green]✓ Audit chain valid ({result['entries_checked']} entries)[/green]")
        return

    console.print(
        f"[red]Audit chain invalid at sequence {result['first_invalid_sequence']}: {result['error']}[/red]"
    )
    raise typer.Exit(1)


# =============================================================================
# SYNTHETIC DATA / EVALUATION
# =============================================================================

@app.command()
def synth(
    output: Path = typer.Argument(..., help="Dataset file (.json or .yaml)"),
    n: int = typer.Option(10, "--count", "-n", help="Number of cases"),
    seed: Optional[int] = typer.Option(None, "--seed", help="Random seed"),
    min_patients: int = typer.Option(2, "--min-patients", help="Minimum patients per case"),
    max_patients: int = typer.Option(4, "--max-patients", help="Maximum patients per case"),
    duty: str = typer.Option("night", "--duty", help="day / evening / night"),
):
    """Generate a synthetic labelled handoff dataset."""
    if min_patients > max_patients:
        console.print("[red]--min-patients cannot exceed --max-patients[/red]")
        raise typer.Exit(1)

    dataset = generate_dataset(n, seed=seed, min_patients=min_patients, max_patients=max_patients, duty_type=duty)
    save_dataset(dataset, output)
    console.print(f"[green]✓ Generated {len(dataset['cases'])} cases → {output}[/green]")


@app.command("eval")
def eval_cmd(
    dataset: Path = typer.Argument(..., help="Dataset file (.json or .yaml)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write report JSON here"),
    json_mode: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "-d", help="Data directory"),
):
    """Evaluate the pipeline against a labelled dataset."""
    config = init_app(data_dir)

    try:
        name, cases = load_dataset(dataset)
        report = EvalRunner(config=config).run(cases, dataset_name=name, show_progress=not json_mode)
    except HandoffError as e:
        console.print(f"[red]Evaluation failed: {e}[/red]")
        raise typer.Exit(1)

    if output:
        _write_json(report.to_dict(), output)

    if json_mode:
        console.print_json(data=report.to_dict())
    else:
        display_eval_report(report)


# =============================================================================
# CONFIG COMMANDS
# =============================================================================

@config_app.command("show")
def config_show(
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "-d", help="Data directory"),
):
    """Show current configuration."""
    config = init_app(data_dir)

    console.print()
    console.print("[bold]Current Configuration[/bold]")
    console.print("─" * 40)
    console.print(f"  Data directory:  {config.data_dir}")
    console.print(f"  Database:        {config.db_path}")
    console.print(f"  Scope:           {config.vault.scope}")
    console.print(f"  Duty default:    {config.pipeline.duty_type}")
    console.print(f"  Ruleset:         {config.pipeline.ruleset_version}")
    console.print(f"  Privacy profile: {config.privacy.privacy_profile}")
    console.print(f"  Execution mode:  {config.privacy.execution_mode}")
    console.print(f"  Persist keys:    {'yes' if config.vault.persist_keys else 'no'}")
    console.print()


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config file"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", "-d", help="Data directory"),
):
    """Write the default configuration file."""
    config = init_app(data_dir)
    path = config.data_dir / "config.yaml"

    if path.exists() and not force:
        console.print(f"[yellow]Config already exists: {path} (use --force)[/yellow]")
        raise typer.Exit(1)

    config.save(path)
    console.print(f"[green]✓ Config written to {path}[/green]")


if __name__ == "__main__":
    app()
