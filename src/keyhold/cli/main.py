"""
keyhold CLI - Main entry point

This module provides the command-line interface for managing a local
identity and signing and publishing events.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..auth.session import SessionMode
from ..client.client import KeyholdClient
from ..core.config import load_config
from ..core.crypto import verify_event
from ..core.errors import KeyholdError, SigningErrorCode, WrongPassword
from ..core.events import parse_events_from_jsonl

console = Console()


def _build_client(ctx) -> KeyholdClient:
    return KeyholdClient(ctx.obj['config'])


def _parse_tags(tags: Tuple[str, ...]) -> List[List[str]]:
    parsed = []
    for tag in tags:
        name, sep, value = tag.partition('=')
        if not sep or not name:
            raise click.BadParameter(f"Tag must look like name=value: {tag}", param_hint='--tag')
        parsed.append([name] + value.split(','))
    return parsed


def _prompt_new_password() -> str:
    return click.prompt("Password", hide_input=True, confirmation_prompt=True)


async def _sign_with_prompt(client: KeyholdClient, kind: int, content: str, tags: List[List[str]]):
    """Sign, prompting for the password when the key is locked"""
    event = client.create_event(kind, content, tags)
    result = await client.sign_event(event)
    attempts = 0
    while result.needs_password or (result.error == SigningErrorCode.WRONG_PASSWORD):
        if attempts >= 3:
            break
        if attempts:
            console.print("[red]Incorrect password[/red]")
        password = click.prompt("Password", hide_input=True)
        result = await client.sign_event(event, password=password)
        attempts += 1
    return result


@click.group()
@click.option('--home', type=click.Path(path_type=Path), default=None,
              help='keyhold home directory (default ~/.keyhold)')
@click.option('--config', 'config_path', type=click.Path(path_type=Path), default=None,
              help='Path to config.yaml')
@click.option('--storage', type=click.Choice(['keyring', 'file']), default=None,
              help='Where to keep the encrypted key')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, home: Optional[Path], config_path: Optional[Path], storage: Optional[str], verbose: bool):
    """keyhold - Local identity custody and signed event publishing"""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path, home=home)
    except KeyholdError as e:
        raise click.ClickException(str(e))
    if storage:
        config = config.model_copy(update={'storage_backend': storage})

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, config.log_level),
        format="%(name)s: %(message)s",
    )
    ctx.obj['config'] = config
    ctx.obj['verbose'] = verbose

    if verbose:
        console.print(f"[dim]Using home: {config.home} ({config.storage_backend} storage)[/dim]")


@cli.command()
@click.pass_context
def generate(ctx):
    """Generate a new identity and store it encrypted"""
    console.print(Panel.fit("🔑 Generating New Identity", style="bold yellow"))

    async def run():
        client = _build_client(ctx)
        if await client.initialize():
            console.print(f"Found existing identity: {client.session.npub}")
            if not click.confirm("Replace it with a new identity?"):
                return
            await client.session.logout()

        password = _prompt_new_password()
        identity, backup = await client.session.generate_and_hold_plaintext(password)
        console.print("✅ Generated and saved encrypted key")
        console.print(f"Public key: {identity.npub}")
        console.print(Panel(
            f"[bold]{backup}[/bold]\n\nWrite this down now. It will not be shown again.",
            title="Secret key backup",
            style="red",
        ))

    asyncio.run(run())


@cli.command('import-key')
@click.option('--remember/--no-remember', default=True,
              help='Store the key encrypted (default) or keep it in memory only')
@click.pass_context
def import_key(ctx, remember: bool):
    """Import an existing secret key (hex or nsec)"""
    console.print(Panel.fit("📥 Importing Identity", style="bold yellow"))

    async def run():
        client = _build_client(ctx)
        secret = click.prompt("Secret key (hex or nsec)", hide_input=True)
        password = _prompt_new_password() if remember else None
        identity = await client.session.import_plaintext(secret, password=password, remember=remember)
        if remember:
            console.print("✅ Key encrypted and saved")
        else:
            console.print("✅ Key held in memory only; it is discarded when this command exits")
        console.print(f"Public key: {identity.npub}")

    asyncio.run(run())


@cli.command()
@click.pass_context
def whoami(ctx):
    """Show the stored identity"""
    async def run():
        client = _build_client(ctx)
        await client.initialize()
        info = client.get_user_info()
        if info['mode'] == SessionMode.ANONYMOUS.value:
            console.print("No identity stored. Run [bold]keyhold generate[/bold] or [bold]keyhold import-key[/bold].")
            return
        table = Table(show_header=False)
        table.add_row("npub", info['npub'])
        table.add_row("public key", info['public_key'])
        table.add_row("mode", info['mode'])
        table.add_row("storage", info['storage'])
        table.add_row("relays", ", ".join(info['relays']) or "-")
        console.print(table)

    asyncio.run(run())


@cli.command()
@click.option('--kind', '-k', default=1, show_default=True, help='Event kind')
@click.option('--content', '-c', prompt=True, help='Event content')
@click.option('--tag', '-t', multiple=True, help='Tag as name=value[,value...]')
@click.pass_context
def sign(ctx, kind: int, content: str, tag: Tuple[str, ...]):
    """Sign an event and print it as JSON"""
    async def run():
        client = _build_client(ctx)
        if not await client.initialize():
            raise click.ClickException("No identity stored")
        result = await _sign_with_prompt(client, kind, content, _parse_tags(tag))
        event = result.unwrap()
        console.print_json(event.to_json())

    asyncio.run(run())


@cli.command()
@click.option('--kind', '-k', default=1, show_default=True, help='Event kind')
@click.option('--content', '-c', prompt=True, help='Event content')
@click.option('--tag', '-t', multiple=True, help='Tag as name=value[,value...]')
@click.option('--relay', '-r', multiple=True, help='Relay endpoint (defaults to configured relays)')
@click.option('--retries', type=click.IntRange(min=0), default=None,
              help='Extra attempts for failed relays (defaults to config)')
@click.pass_context
def publish(ctx, kind: int, content: str, tag: Tuple[str, ...], relay: Tuple[str, ...],
            retries: Optional[int]):
    """Sign an event and publish it to relays"""
    async def run():
        client = _build_client(ctx)
        if not await client.initialize():
            raise click.ClickException("No identity stored")
        relays = list(relay) or list(client.config.relays)
        if not relays:
            raise click.ClickException("No relays given; use --relay or set relays in config.yaml")

        event = (await _sign_with_prompt(client, kind, content, _parse_tags(tag))).unwrap()
        outcome = await client.publish(event, relays, retries=retries)

        table = Table(title=f"Event {event.id[:16]}...")
        table.add_column("Relay")
        table.add_column("Result")
        for endpoint in relays:
            if endpoint in outcome.succeeded:
                table.add_row(endpoint, "[green]accepted[/green]")
            else:
                failure = outcome.failed[endpoint]
                table.add_row(endpoint, f"[red]{failure.reason.value}[/red] {failure.message}")
        console.print(table)
        outcome.raise_for_status()

    asyncio.run(run())


@cli.command()
@click.argument('path', type=click.Path(exists=True, dir_okay=False, path_type=Path))
def verify(path: Path):
    """Verify ids and signatures of events in a JSONL file"""
    events = parse_events_from_jsonl(path.read_text(encoding='utf-8'))
    if not events:
        console.print("No events found.")
        return

    invalid = 0
    for event in events:
        ok = verify_event(event)
        invalid += 0 if ok else 1
        status = "[green]VALID[/green]" if ok else "[red]INVALID[/red]"
        console.print(f"{status} {event.id[:16]}... kind {event.kind} by {event.pubkey[:8]}...")

    if invalid:
        console.print(f"❌ {invalid} of {len(events)} events failed verification")
        sys.exit(1)
    console.print(f"✅ All {len(events)} events verified")


@cli.command('change-password')
@click.pass_context
def change_password(ctx):
    """Re-encrypt the stored key under a new password"""
    async def run():
        client = _build_client(ctx)
        if not await client.initialize():
            raise click.ClickException("No identity stored")
        old_password = click.prompt("Current password", hide_input=True)
        console.print("New password")
        new_password = _prompt_new_password()
        await client.session.change_password(old_password, new_password)
        console.print("✅ Password changed")

    asyncio.run(run())


@cli.command()
@click.option('--purge', is_flag=True, help='Also delete the stored encrypted key')
@click.pass_context
def logout(ctx, purge: bool):
    """Log out, optionally deleting the stored key"""
    async def run():
        client = _build_client(ctx)
        await client.initialize()
        if purge and not click.confirm("Delete the stored key? Without a backup it cannot be recovered"):
            return
        await client.session.logout(purge_persisted=purge)
        console.print("👋 Stored key deleted" if purge else "👋 Logged out")

    asyncio.run(run())


@cli.command()
def version():
    """Show version information"""
    console.print(Panel.fit(f"keyhold v{__version__}", style="bold blue"))
    console.print("Local identity custody and signed event publishing")
    console.print("Licensed under AGPLv3")


def main():
    """Main entry point"""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n👋 Goodbye!")
        sys.exit(0)
    except WrongPassword:
        console.print("❌ Incorrect password")
        sys.exit(1)
    except KeyholdError as e:
        console.print(f"❌ {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
