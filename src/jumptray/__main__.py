"""Entry point for jumptray."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from jumptray import __version__
from jumptray.config import ConfigStore
from jumptray.errors import JumpTrayError
from jumptray.key_manager import (
    build_install_command,
    generate_key,
    probe_connection,
    public_key_path,
    resolved_key_path,
)
from jumptray.managers.tunnel import TunnelEngine
from jumptray.settings import SettingsEditor

POLL_INTERVAL_S = 1.0


async def _run_session(engine: TunnelEngine) -> None:
    await engine.start(click.echo)
    try:
        while engine.is_connected():
            await asyncio.sleep(POLL_INTERVAL_S)
        click.echo("SSH exited", err=True)
    finally:
        await engine.stop(click.echo)


@click.group()
@click.version_option(version=__version__, prog_name="jumptray")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: per-user config location).",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """Keep SSH port forwards to a remote network open through a jump host."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    ctx.obj = ConfigStore(config_path)


@cli.command()
@click.pass_obj
def connect(store: ConfigStore) -> None:
    """Open the tunnels of the active profile until ssh exits or Ctrl-C."""
    engine = TunnelEngine(store)
    try:
        asyncio.run(_run_session(engine))
    except KeyboardInterrupt:
        pass
    except JumpTrayError as e:
        raise click.ClickException(str(e)) from e


@cli.command()
@click.option("--profile", default=None, help="Profile to check (default: active).")
@click.pass_obj
def check(store: ConfigStore, profile: str | None) -> None:
    """Validate the stored settings and print every problem found."""
    try:
        editor = SettingsEditor(store, profile=profile)
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    if store.last_recovery is not None:
        click.echo(f"Config was reset ({store.last_recovery.reason})", err=True)

    report = editor.validate()
    if report.ok:
        click.echo(f"Profile {editor.profile}: {len(report.tunnels)} tunnels, settings OK")
        return
    click.echo(report.text, err=True)
    sys.exit(1)


@cli.command()
@click.pass_obj
def keygen(store: ConfigStore) -> None:
    """Generate the ed25519 key pair unless it already exists."""
    config = store.load()
    try:
        path = generate_key(config.key_path)
    except JumpTrayError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Key ready: {path}")


@cli.command()
@click.pass_obj
def probe(store: ConfigStore) -> None:
    """Check that the jump host accepts the key."""
    config = store.load()
    key_path = str(resolved_key_path(config.key_path))
    try:
        result = asyncio.run(probe_connection(config.jump, key_path))
    except OSError as e:
        raise click.ClickException(f"Could not run ssh: {e}") from e
    if result.ok:
        click.echo("SSH OK")
        return
    click.echo(f"SSH FAIL (code={result.exit_code}) {result.stderr}", err=True)
    sys.exit(1)


@cli.command("install-command")
@click.pass_obj
def install_command(store: ConfigStore) -> None:
    """Print the one-time command that installs the public key on the jump host."""
    config = store.load()
    pub = public_key_path(resolved_key_path(config.key_path))
    if not pub.is_file():
        raise click.ClickException("Public key not found. Generate key first.")
    click.echo(build_install_command(config.jump.user, config.jump.host, config.jump.port, pub))


def main() -> int:
    cli()
    return 0


if __name__ == "__main__":
    sys.exit(main())
