"""
CLI entry point for TimeCapsule.

This module provides the Typer-based command-line interface. The caller's
identity comes from --user/--email (or TIMECAPSULE_USER/TIMECAPSULE_EMAIL);
the CLI trusts it the way the service trusts any resolved identity.

Commands:
    create      Seal a new capsule
    show        Show a capsule as the caller may see it
    list        List the caller's own capsules
    shared      List capsules shared with the caller
    download    Save an attachment to disk
    reveal      Reveal a capsule now (owner only)
    cancel      Cancel a scheduled capsule (owner only)
    delete      Delete a capsule and its files (owner only)
    audit       Show a capsule's audit trail (owner only)

Architecture Note:
    The CLI only parses arguments, resolves identity and renders results.
    Every rule lives in CapsuleService.
"""

import json
import mimetypes
import traceback
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from timecapsule import __version__
from timecapsule.config import Settings, load_settings
from timecapsule.errors import CapsuleError, CapsuleValidationError
from timecapsule.logger import logger_config
from timecapsule.schema import (
    AttachmentUpload,
    AuditEntry,
    CapsuleStatus,
    CapsuleView,
    Privacy,
    Viewer,
    Visibility,
    ensure_utc,
)
from timecapsule.service import CapsuleService

# Initialize Typer app with metadata
app = typer.Typer(
    name="timecapsule",
    help="Seal messages and files until a future date.",
    add_completion=False,
    no_args_is_help=True,
)

# Rich console for formatted output
console = Console()


# =============================================================================
# Shared Options
# =============================================================================

UserOption = Annotated[
    str,
    typer.Option(
        "--user",
        "-u",
        help="Your user id.",
        envvar="TIMECAPSULE_USER",
    ),
]
EmailOption = Annotated[
    Optional[str],
    typer.Option(
        "--email",
        "-e",
        help="Your email address (used to match recipient capsules).",
        envvar="TIMECAPSULE_EMAIL",
    ),
]
ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Path to a settings YAML file.",
        envvar="TIMECAPSULE_CONFIG",
        exists=True,
        readable=True,
        resolve_path=True,
    ),
]
JsonOption = Annotated[
    bool,
    typer.Option(
        "--json",
        help="Output results in JSON format.",
    ),
]
DebugOption = Annotated[
    bool,
    typer.Option(
        "--debug",
        help="Enable debug logging and full error tracebacks.",
    ),
]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]timecapsule[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    TimeCapsule - messages that open in the future.

    Capsules stay locked until their unlock time and are only ever shown to
    the audience their privacy tier allows.
    """
    pass


# =============================================================================
# Helpers
# =============================================================================


def _open_service(config: Path | None, json_output: bool, debug: bool) -> CapsuleService:
    """Load settings, configure logging and build the service."""
    try:
        settings = load_settings(config) if config else Settings()
    except (OSError, ValidationError) as e:
        _fail_message("config_load_error", f"Error loading config: {e}", json_output, debug)
    logger_config.configure("DEBUG" if debug else settings.log_level, settings.log_file)
    try:
        return CapsuleService.from_settings(settings)
    except CapsuleError as e:
        _fail(e, json_output, debug)


def _fail(error: CapsuleError, json_output: bool, debug: bool) -> None:
    """Report a core error and exit with status 1."""
    if json_output:
        output: dict[str, Any] = {"error": True, **error.to_dict()}
        if debug:
            output["traceback"] = traceback.format_exc()
        print(json.dumps(output, indent=2, default=str))
    else:
        console.print(f"[red]{escape(str(error))}[/red]")
        if debug:
            console.print(f"[dim]{traceback.format_exc()}[/dim]")
    raise typer.Exit(code=1)


def _fail_message(error_type: str, message: str, json_output: bool, debug: bool) -> None:
    """Report a non-core error and exit with status 1."""
    if json_output:
        output: dict[str, Any] = {"error": True, "error_type": error_type, "message": message}
        if debug:
            output["traceback"] = traceback.format_exc()
        print(json.dumps(output, indent=2))
    else:
        console.print(f"[red]{escape(message)}[/red]")
        if debug:
            console.print(f"[dim]{traceback.format_exc()}[/dim]")
    raise typer.Exit(code=1)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _parse_when(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError:
        raise CapsuleValidationError(
            message=f"Invalid timestamp: {value!r}",
            field_name="unlock_at",
            suggestion="Use ISO 8601, e.g. 2031-01-01T09:00:00+00:00",
        ) from None


def _read_upload(path: Path) -> AttachmentUpload:
    content_type, _ = mimetypes.guess_type(path.name)
    return AttachmentUpload(
        filename=path.name,
        content_type=content_type or "application/octet-stream",
        data=path.read_bytes(),
    )


def _status_display(status: CapsuleStatus) -> str:
    if status == CapsuleStatus.REVEALED:
        return "[green]revealed[/green]"
    if status == CapsuleStatus.CANCELLED:
        return "[red]cancelled[/red]"
    return "[yellow]scheduled[/yellow]"


def _lock_display(view: CapsuleView) -> str:
    if view.status == CapsuleStatus.CANCELLED:
        return "[red]withheld[/red]"
    return "[green]unlocked[/green]" if view.is_unlocked else "[yellow]locked[/yellow]"


def _display_capsule(view: CapsuleView) -> None:
    """Display a single capsule view."""
    console.print(f"[bold]{view.title}[/bold]  [dim]{view.id}[/dim]")
    console.print(f"  Status: {_status_display(view.status)} ({_lock_display(view)})")
    console.print(f"  Privacy: {view.privacy.value}")
    console.print(f"  Created: {view.created_at.isoformat(timespec='seconds')}")
    label = "Unlocked on" if view.is_unlocked else "Unlocks on"
    console.print(f"  {label}: {view.unlock_at.isoformat(timespec='seconds')}")
    if view.revealed_at:
        console.print(f"  Revealed: {view.revealed_at.isoformat(timespec='seconds')}")
    if view.recipients:
        console.print(f"  Recipients: {', '.join(view.recipients)}")
    console.print()

    if view.visibility == Visibility.LOCKED:
        if view.status == CapsuleStatus.CANCELLED:
            console.print("[dim]This capsule was cancelled; its message will never be shown.[/dim]")
        else:
            console.print(f"[dim]This message is locked until {view.unlock_at.isoformat(timespec='seconds')}[/dim]")
        if view.attachment_count:
            plural = "s" if view.attachment_count > 1 else ""
            console.print(f"[dim]{view.attachment_count} file{plural} locked[/dim]")
        return

    console.print(view.message or "")
    if view.attachments:
        console.print()
        table = Table(show_header=True, header_style="bold")
        table.add_column("Attachment", style="cyan")
        table.add_column("Filename")
        table.add_column("Type")
        table.add_column("Size", justify="right")
        for attachment in view.attachments:
            table.add_row(
                attachment.id,
                attachment.filename,
                attachment.content_type,
                str(attachment.size_bytes),
            )
        console.print(table)


def _display_capsule_table(views: list[CapsuleView], empty_message: str) -> None:
    if not views:
        console.print(f"[dim]{empty_message}[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Capsule", style="cyan")
    table.add_column("Title")
    table.add_column("Status", width=10)
    table.add_column("Privacy", width=10)
    table.add_column("Unlocks")
    table.add_column("Files", justify="right")
    table.add_column("Preview")

    for view in views:
        preview = view.preview or ""
        if len(preview) > 40:
            preview = preview[:37] + "..."
        table.add_row(
            view.id,
            view.title,
            _status_display(view.status),
            view.privacy.value,
            view.unlock_at.isoformat(timespec="minutes"),
            str(view.attachment_count),
            preview if view.visibility == Visibility.FULL else "[dim]locked[/dim]",
        )
    console.print(table)


def _view_json(view: CapsuleView) -> dict[str, Any]:
    return view.model_dump(mode="json")


def _audit_json(entry: AuditEntry) -> dict[str, Any]:
    return entry.model_dump(mode="json")


# =============================================================================
# Commands
# =============================================================================


@app.command()
def create(
    title: Annotated[str, typer.Argument(help="Capsule title.")],
    unlock_at: Annotated[
        str,
        typer.Option(
            "--unlock-at",
            "-t",
            help="When the capsule opens (ISO 8601; naive times are UTC).",
        ),
    ],
    user: UserOption,
    message: Annotated[
        Optional[str],
        typer.Option("--message", "-m", help="Message text."),
    ] = None,
    message_file: Annotated[
        Optional[Path],
        typer.Option(
            "--message-file",
            help="Read the message from a file.",
            exists=True,
            readable=True,
            dir_okay=False,
            resolve_path=True,
        ),
    ] = None,
    privacy: Annotated[
        Privacy,
        typer.Option("--privacy", "-p", help="Who may see the capsule."),
    ] = Privacy.PRIVATE,
    recipients: Annotated[
        Optional[list[str]],
        typer.Option(
            "--recipient",
            "-r",
            help="Recipient email (repeatable, or comma-separated).",
        ),
    ] = None,
    attach: Annotated[
        Optional[list[Path]],
        typer.Option(
            "--attach",
            "-a",
            help="File to seal with the capsule (repeatable).",
            exists=True,
            readable=True,
            dir_okay=False,
            resolve_path=True,
        ),
    ] = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Seal a new capsule.

    Example:
        $ timecapsule create "Letter to 2035" -u alice -t 2035-01-01T00:00:00Z \\
            -m "Hello future me" --attach photo.jpg
    """
    if message is not None and message_file is not None:
        _fail_message("usage_error", "Use either --message or --message-file, not both", json_output, debug)
    text = message or ""
    if message_file is not None:
        try:
            text = message_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            _fail_message("file_error", f"Cannot read {message_file}: {e}", json_output, debug)

    with _open_service(config, json_output, debug) as service:
        try:
            when = _parse_when(unlock_at)
            uploads = [_read_upload(path) for path in attach or []]
            emails = [part for entry in recipients or [] for part in entry.split(",")]
            capsule = service.create(
                owner_id=user,
                title=title,
                message=text,
                unlock_at=when,
                privacy=privacy,
                recipients=emails,
                attachments=uploads,
            )
            view = service.get(capsule.id, Viewer(user_id=user))
        except CapsuleError as e:
            _fail(e, json_output, debug)

        if json_output:
            _print_json(_view_json(view))
        else:
            console.print(f"[green]✓[/green] Sealed capsule [bold]{capsule.id}[/bold]")
            console.print(f"[dim]Unlocks {capsule.unlock_at.isoformat(timespec='seconds')}[/dim]")


@app.command()
def show(
    capsule_id: Annotated[str, typer.Argument(help="The capsule ID to show.")],
    user: UserOption,
    email: EmailOption = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Show a capsule as you are allowed to see it.

    Example:
        $ timecapsule show 3f2a... -u bob -e bob@example.com
    """
    with _open_service(config, json_output, debug) as service:
        try:
            view = service.get(capsule_id, Viewer(user_id=user, email=email))
        except CapsuleError as e:
            _fail(e, json_output, debug)

        if json_output:
            _print_json(_view_json(view))
        else:
            _display_capsule(view)


@app.command("list")
def list_capsules(
    user: UserOption,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    List your capsules, newest first.

    Example:
        $ timecapsule list -u alice
    """
    with _open_service(config, json_output, debug) as service:
        try:
            views = service.list_capsules(user)
        except CapsuleError as e:
            _fail(e, json_output, debug)

        if json_output:
            _print_json([_view_json(v) for v in views])
        else:
            _display_capsule_table(views, "No capsules yet.")


@app.command()
def shared(
    user: UserOption,
    email: EmailOption = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    List public capsules and capsules addressed to you.

    Example:
        $ timecapsule shared -u bob -e bob@example.com
    """
    with _open_service(config, json_output, debug) as service:
        try:
            views = service.list_shared(Viewer(user_id=user, email=email))
        except CapsuleError as e:
            _fail(e, json_output, debug)

        if json_output:
            _print_json([_view_json(v) for v in views])
        else:
            _display_capsule_table(views, "Nothing has been shared with you.")


@app.command()
def download(
    attachment_id: Annotated[str, typer.Argument(help="The attachment ID to download.")],
    user: UserOption,
    email: EmailOption = None,
    out: Annotated[
        Optional[Path],
        typer.Option(
            "--out",
            "-o",
            help="Where to save the file. Defaults to the original filename.",
            resolve_path=True,
        ),
    ] = None,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Save an attachment of an unlocked capsule to disk.

    Example:
        $ timecapsule download 9b1c... -u bob -e bob@example.com -o photo.jpg
    """
    with _open_service(config, json_output, debug) as service:
        try:
            content = service.download_attachment(attachment_id, Viewer(user_id=user, email=email))
        except CapsuleError as e:
            _fail(e, json_output, debug)

        target = out or Path.cwd() / content.attachment.filename
        try:
            target.write_bytes(content.data)
        except OSError as e:
            _fail_message("write_error", f"Could not write {target}: {e}", json_output, debug)

        if json_output:
            _print_json({**content.attachment.model_dump(mode="json"), "saved_to": str(target)})
        else:
            console.print(f"[green]✓[/green] Saved {content.attachment.filename} to {target}")


@app.command()
def reveal(
    capsule_id: Annotated[str, typer.Argument(help="The capsule ID to reveal.")],
    user: UserOption,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Reveal one of your capsules now, ahead of its unlock time.
    """
    with _open_service(config, json_output, debug) as service:
        try:
            capsule = service.reveal(capsule_id, user)
        except CapsuleError as e:
            _fail(e, json_output, debug)

        if json_output:
            _print_json(capsule.model_dump(mode="json"))
        else:
            console.print(f"[green]✓[/green] Capsule [bold]{capsule.id}[/bold] revealed")


@app.command()
def cancel(
    capsule_id: Annotated[str, typer.Argument(help="The capsule ID to cancel.")],
    user: UserOption,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Cancel one of your scheduled capsules. Nobody else will ever read it.
    """
    with _open_service(config, json_output, debug) as service:
        try:
            capsule = service.cancel(capsule_id, user)
        except CapsuleError as e:
            _fail(e, json_output, debug)

        if json_output:
            _print_json(capsule.model_dump(mode="json"))
        else:
            console.print(f"[yellow]✓[/yellow] Capsule [bold]{capsule.id}[/bold] cancelled")


@app.command()
def delete(
    capsule_id: Annotated[str, typer.Argument(help="The capsule ID to delete.")],
    user: UserOption,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip the confirmation prompt."),
    ] = False,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Permanently delete one of your capsules and all of its files.
    """
    if not yes:
        if json_output:
            _fail_message("usage_error", "delete with --json needs --yes to confirm", json_output, debug)
        typer.confirm(
            "This action cannot be undone. Delete the capsule and all associated files?",
            abort=True,
        )

    with _open_service(config, json_output, debug) as service:
        try:
            service.delete(capsule_id, user)
        except CapsuleError as e:
            _fail(e, json_output, debug)

        if json_output:
            _print_json({"deleted": capsule_id})
        else:
            console.print(f"[green]✓[/green] Capsule [bold]{capsule_id}[/bold] deleted")


@app.command()
def audit(
    capsule_id: Annotated[str, typer.Argument(help="The capsule ID to inspect.")],
    user: UserOption,
    config: ConfigOption = None,
    json_output: JsonOption = False,
    debug: DebugOption = False,
) -> None:
    """
    Show the lifecycle history of one of your capsules.
    """
    with _open_service(config, json_output, debug) as service:
        try:
            entries = service.audit_trail(capsule_id, user)
        except CapsuleError as e:
            _fail(e, json_output, debug)

        if json_output:
            _print_json([_audit_json(entry) for entry in entries])
            return

        table = Table(show_header=True, header_style="bold")
        table.add_column("#", style="dim", width=3)
        table.add_column("Action", style="cyan")
        table.add_column("By")
        table.add_column("When")
        for entry in entries:
            table.add_row(
                str(entry.id),
                entry.action.value,
                entry.performed_by,
                entry.timestamp.isoformat(timespec="seconds"),
            )
        console.print(table)


if __name__ == "__main__":
    app()
