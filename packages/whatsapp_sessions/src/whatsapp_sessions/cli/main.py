"""
WhatsApp Sessions CLI

Command-line interface for WhatsApp session administration.

Commands:
- provision: Create a session and print its webhook URL
- connect: Start pairing and save the QR code
- disconnect: Stop a session
- restart: Restart a session on the provider
- rotate-webhook: Replace a session's webhook credential
- terminate: Delete a session, its credential and its conversations
- sync-sessions: Reconcile session statuses with the provider
- send: Send a text message
- list-sessions: List a tenant's sessions
- list-conversations: List conversations for a tenant
- replay-dlq: Replay events from the dead letter stream
- stream-info: Show information about a Redis stream
"""

import asyncio
import base64
from pathlib import Path
from typing import Optional
from uuid import UUID

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from whatsapp_sessions.errors import WhatsAppSessionError
from whatsapp_sessions.streams.groups import DLQ_STREAM, INBOUND_STREAM

app = typer.Typer(
    name="whatsapp-sessions",
    help="WhatsApp Sessions CLI",
)

console = Console()


def get_db():
    """Get database session."""
    from basecore.db import get_db as _get_db
    return next(_get_db())


def get_redis():
    """Get Redis client."""
    from basecore.redis import get_redis_client
    return get_redis_client()


def _parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        rprint(f"[red]Invalid {label}: {value}[/red]")
        raise typer.Exit(1)


def _run_provisioner(db, operation):
    """Run an async provisioner operation and close its HTTP client."""
    from whatsapp_sessions.service.provisioner import SessionProvisioner

    provisioner = SessionProvisioner.from_settings(db)

    async def run():
        try:
            return await operation(provisioner)
        finally:
            await provisioner.client.close()

    try:
        return asyncio.run(run())
    except WhatsAppSessionError as e:
        rprint(f"[red]{e.code}: {e.message}[/red]")
        raise typer.Exit(1)


@app.command()
def provision(
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
    display_name: Optional[str] = typer.Option(None, help="Human label for the session"),
):
    """
    Create a WAHA session and its webhook.

    The webhook URL contains a secret token and is shown only once.
    """
    db = get_db()

    try:
        result = _run_provisioner(
            db, lambda p: p.generate_webhook(tenant_id, display_name)
        )

        rprint(f"[green]Session provisioned:[/green]")
        rprint(f"  ID: {result.session_id}")
        rprint(f"  Name: {result.session_name}")
        rprint(f"  Webhook URL: {result.webhook_url}")
        rprint(f"\n[yellow]Next step: Run 'connect' to pair a phone[/yellow]")

    finally:
        db.close()


@app.command()
def connect(
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
    session_id: str = typer.Argument(..., help="Session UUID"),
    output: Optional[Path] = typer.Option(None, help="Write the QR image to this file"),
):
    """
    Start pairing a session (generate QR code).

    Scan the QR code with WhatsApp before it expires.
    """
    session_uuid = _parse_uuid(session_id, "session ID")
    db = get_db()

    try:
        challenge = _run_provisioner(db, lambda p: p.connect(tenant_id, session_uuid))

        rprint(f"[green]QR code issued, expires in {challenge.expires_in_seconds}s[/green]")
        if output:
            _header, _, data = challenge.qr_code_image.partition(",")
            output.write_bytes(base64.b64decode(data))
            rprint(f"  Saved to {output}")
        else:
            rprint(f"[cyan]QR Code (data URL):[/cyan]")
            rprint(challenge.qr_code_image[:100] + "...")

    finally:
        db.close()


@app.command()
def disconnect(
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
    session_id: str = typer.Argument(..., help="Session UUID"),
):
    """Stop a session on the provider."""
    session_uuid = _parse_uuid(session_id, "session ID")
    db = get_db()

    try:
        session = _run_provisioner(db, lambda p: p.disconnect(tenant_id, session_uuid))
        rprint(f"[green]Session {session.provider_session_name} disconnected[/green]")

    finally:
        db.close()


@app.command()
def restart(
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
    session_id: str = typer.Argument(..., help="Session UUID"),
):
    """Restart a session on the provider."""
    session_uuid = _parse_uuid(session_id, "session ID")
    db = get_db()

    try:
        session = _run_provisioner(db, lambda p: p.restart(tenant_id, session_uuid))
        rprint(f"[green]Session {session.provider_session_name} restarted[/green]")

    finally:
        db.close()


@app.command()
def rotate_webhook(
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
    session_id: str = typer.Argument(..., help="Session UUID"),
    force: bool = typer.Option(False, "--force", "-f", help="Skip confirmation"),
):
    """
    Replace a session's webhook credential.

    The provider session is recreated, so the phone has to be paired again.
    """
    session_uuid = _parse_uuid(session_id, "session ID")
    if not force:
        if not typer.confirm("Rotating the webhook unpairs the phone. Continue?"):
            rprint("[yellow]Cancelled[/yellow]")
            raise typer.Exit(0)

    db = get_db()

    try:
        result = _run_provisioner(db, lambda p: p.rotate_webhook(tenant_id, session_uuid))
        rprint(f"[green]Webhook rotated:[/green]")
        rprint(f"  Webhook URL: {result.webhook_url}")

    finally:
        db.close()


@app.command()
def terminate(
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
    session_id: str = typer.Argument(..., help="Session UUID"),
    confirm_name: Optional[str] = typer.Option(
        None, "--confirm", help="Session name, required with --yes"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the interactive prompt"),
):
    """
    Delete a session permanently.

    Revokes the webhook, deletes the provider session and removes the
    session's conversations and messages.
    """
    session_uuid = _parse_uuid(session_id, "session ID")

    if yes and not confirm_name:
        rprint("[red]--yes requires --confirm <session name>[/red]")
        raise typer.Exit(1)

    if not yes:
        confirm_name = typer.prompt("Type the session name to confirm")

    db = get_db()

    try:
        _run_provisioner(db, lambda p: p.terminate(tenant_id, session_uuid, confirm_name))
        rprint(f"[green]Session {confirm_name} terminated[/green]")

    finally:
        db.close()


@app.command()
def sync_sessions(
    tenant_id: Optional[str] = typer.Option(None, "--tenant", "-t", help="Only this tenant"),
):
    """
    Reconcile session statuses with the provider.

    Use after missed webhooks or a provider restart.
    """
    db = get_db()

    try:
        counts = _run_provisioner(db, lambda p: p.sync_sessions(tenant_id))
        rprint(
            f"[green]Synced {counts['synced']} session(s):[/green] "
            f"{counts['changed']} changed, {counts['missing']} missing on provider"
        )

    finally:
        db.close()


@app.command()
def send(
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
    session_id: str = typer.Argument(..., help="Session UUID"),
    to: str = typer.Argument(..., help="Recipient phone number"),
    text: str = typer.Argument(..., help="Message text"),
):
    """Send a text message from a connected session."""
    from whatsapp_sessions.service.outbound import OutboundSender

    session_uuid = _parse_uuid(session_id, "session ID")
    db = get_db()

    try:
        result = _run_provisioner(
            db,
            lambda p: OutboundSender.from_settings(db, p.client).send_text(
                tenant_id, session_uuid, to, text
            ),
        )
        rprint(f"[green]Message sent:[/green] {result['provider_message_id']}")
        rprint(f"  Conversation: {result['conversation_id']}")

    finally:
        db.close()


@app.command()
def list_sessions(
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
):
    """
    List a tenant's sessions.
    """
    db = get_db()

    try:
        from basecore.settings import get_settings
        from whatsapp_sessions.persistence.repo import WhatsAppRepository
        from whatsapp_sessions.service.state_machine import SessionStateMachine

        settings = get_settings()
        machine = SessionStateMachine(db, qr_ttl_seconds=settings.QR_TTL_SECONDS)
        sessions = WhatsAppRepository(db).list_sessions(tenant_id)
        for session in sessions:
            machine.refresh(session)
        db.commit()

        if not sessions:
            rprint("[yellow]No sessions found[/yellow]")
            raise typer.Exit(0)

        table = Table(title=f"Sessions for tenant {tenant_id}")
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Display")
        table.add_column("Status")
        table.add_column("Phone")
        table.add_column("Created")

        for session in sessions:
            table.add_row(
                str(session.id),
                session.provider_session_name,
                session.display_name or "-",
                session.status,
                session.phone_number or "-",
                session.created_at.strftime("%Y-%m-%d %H:%M"),
            )

        console.print(table)

    finally:
        db.close()


@app.command()
def list_conversations(
    tenant_id: str = typer.Argument(..., help="Tenant ID"),
    session_id: Optional[str] = typer.Option(None, help="Filter by session UUID"),
    include_archived: bool = typer.Option(False, "--archived", help="Include archived"),
    limit: int = typer.Option(20, help="Maximum number of conversations to show"),
):
    """
    List conversations for a tenant.
    """
    session_uuid = _parse_uuid(session_id, "session ID") if session_id else None
    db = get_db()

    try:
        from whatsapp_sessions.service.read_api import ConversationReader

        conversations = ConversationReader(db).list_conversations(
            tenant_id,
            session_id=session_uuid,
            include_archived=include_archived,
            limit=limit,
        )

        if not conversations:
            rprint("[yellow]No conversations found[/yellow]")
            raise typer.Exit(0)

        table = Table(title=f"Conversations for tenant {tenant_id}")
        table.add_column("ID", style="dim")
        table.add_column("Phone")
        table.add_column("Unread")
        table.add_column("Version")
        table.add_column("Last Message")

        for conv in conversations:
            table.add_row(
                str(conv.id)[:8] + "...",
                conv.contact_phone,
                str(conv.unread_count),
                str(conv.version),
                conv.last_message_at.strftime("%Y-%m-%d %H:%M") if conv.last_message_at else "-",
            )

        console.print(table)

    finally:
        db.close()


@app.command()
def replay_dlq(
    limit: int = typer.Option(10, help="Maximum events to replay"),
    stream: str = typer.Option(DLQ_STREAM, help="DLQ stream name"),
):
    """
    Replay events from the dead letter stream.

    Each entry's original event is republished to the inbound stream and
    removed from the DLQ.
    """
    from whatsapp_sessions.contracts.envelope import WhatsAppEnvelope

    redis_client = get_redis()
    messages = redis_client.xrange(stream, count=limit)

    if not messages:
        rprint("[yellow]No messages in DLQ[/yellow]")
        raise typer.Exit(0)

    rprint(f"[cyan]Found {len(messages)} messages in DLQ[/cyan]")

    replayed = 0
    for msg_id, data in messages:
        try:
            envelope = WhatsAppEnvelope.from_stream_message(msg_id, data)
            original_event = envelope.payload.get("original_event", {})
            if not original_event:
                rprint(f"[yellow]Skipping {msg_id}: no original_event[/yellow]")
                continue

            original_envelope = WhatsAppEnvelope.from_dict(original_event)
            redis_client.xadd(INBOUND_STREAM, original_envelope.to_stream_data())
            redis_client.xdel(stream, msg_id)

            replayed += 1
            rprint(f"[green]Replayed {msg_id} to {INBOUND_STREAM}[/green]")

        except (KeyError, ValueError) as e:
            rprint(f"[red]Failed to replay {msg_id}: {e}[/red]")

    rprint(f"\n[green]Replayed {replayed} messages[/green]")


@app.command()
def stream_info(
    stream: str = typer.Option(INBOUND_STREAM, help="Stream name"),
):
    """
    Show information about a Redis stream.
    """
    from whatsapp_sessions.streams.groups import get_stream_info

    info = get_stream_info(get_redis(), stream)

    rprint(f"\n[cyan]Stream: {stream}[/cyan]")
    rprint(f"  Length: {info.get('length', 0)}")
    if info.get("max_len"):
        rprint(f"  Trimmed at: ~{info['max_len']}")

    if info.get("first_entry"):
        rprint(f"  First entry: {info['first_entry'][0]}")
    if info.get("last_entry"):
        rprint(f"  Last entry: {info['last_entry'][0]}")

    groups = info.get("groups", [])
    if groups:
        rprint(f"\n  Consumer Groups:")
        for group in groups:
            rprint(f"    - {group.get('name')}: {group.get('pending')} pending, {group.get('consumers')} consumers")


if __name__ == "__main__":
    app()
