import dataclasses
import json
import os
import sys
import threading

import click
import qrcode

from . import archive, connectivity, dns_resolver, wgquick
from .backends import create_backend
from .config import load_config
from .errors import DNSResolutionError, ParseError, TunnelctlError
from .keychain import FileCredentialStore
from .keys import PrivateKey
from .log import setup_logging
from .manager import TunnelActivationListener, TunnelsManager
from .path_monitor import PollingPathMonitor
from .platforms import profile_for
from .profiles import JsonProfileStore
from .provider import LinuxTunnelHost, LocalTunnelSession
from .settings import SettingsGenerator
from .status import TunnelStatus


def _fail(error: TunnelctlError):
    title, message = error.alert_text
    click.echo(f"Error: {title}: {message}", err=True)
    sys.exit(1)


def _read_config(path, name=None):
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except UnicodeDecodeError:
        click.echo(f"Error: Unable to import tunnel: '{path}' is not UTF-8 text", err=True)
        sys.exit(1)
    try:
        return wgquick.parse(text, name=name)
    except ParseError as e:
        _fail(e)


def _settings_generator(config, platform):
    results = dns_resolver.resolve_batch([peer.endpoint for peer in config.peers])
    for result in results:
        if isinstance(result, DNSResolutionError):
            _fail(result)
    return SettingsGenerator(config, results, platform=platform)


def _open_manager(settings) -> TunnelsManager:
    store = JsonProfileStore(settings["profiles_path"])
    credentials = FileCredentialStore(settings["credentials_path"])
    platform = profile_for(settings["platform"])

    def session_factory(tunnel):
        return LocalTunnelSession(
            lambda: tunnel.profile, credentials,
            LinuxTunnelHost(),
            lambda: create_backend(library_path=settings["libwg_path"]),
            platform=platform,
            path_monitor_factory=lambda: PollingPathMonitor(connectivity.current_path),
            settings_timeout=settings["settings_timeout"],
        )

    try:
        return TunnelsManager.create(store, credentials, session_factory)
    except TunnelctlError as e:
        _fail(e)


def _tunnel_or_fail(manager, name):
    tunnel = manager.tunnel_named(name)
    if tunnel is None:
        click.echo(f"Error: no tunnel named '{name}'", err=True)
        sys.exit(1)
    return tunnel


@click.group()
@click.option("--config", "config_path", default=None, help="Path to the tunnelctl JSON config.")
@click.option("--log-level", default=None, help="Override the configured log level.")
@click.pass_context
def cli(ctx, config_path, log_level):
    """WireGuard tunnel configuration and control."""
    settings = load_config(config_path)
    setup_logging(log_level or settings["log_level"])
    ctx.obj = settings


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def check(path):
    """Validate a wg-quick configuration file."""
    config = _read_config(path)
    click.echo(f"OK: {len(config.peers)} peer(s)")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def show(path):
    """Print a configuration file in canonical wg-quick form."""
    click.echo(wgquick.serialize(_read_config(path)), nl=False)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--platform", default=None, help="mobile or desktop")
@click.pass_obj
def uapi(settings, path, platform):
    """Resolve endpoints and print the backend key=value configuration."""
    generator = _settings_generator(_read_config(path), profile_for(platform or settings["platform"]))
    text, _ = generator.uapi_configuration()
    click.echo(text, nl=False)


@cli.command(name="settings")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--platform", default=None, help="mobile or desktop")
@click.pass_obj
def network_settings(settings, path, platform):
    """Print the network settings a tunnel would apply, as JSON."""
    generator = _settings_generator(_read_config(path), profile_for(platform or settings["platform"]))
    click.echo(json.dumps(dataclasses.asdict(generator.generate_network_settings()), indent=2))


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def qr(path):
    """Show a configuration as a QR code for mobile import."""
    config = _read_config(path)
    code = qrcode.QRCode()
    code.add_data(wgquick.serialize(config))
    code.print_ascii()


@cli.command()
def genkey():
    """Generate a private key."""
    click.echo(PrivateKey.generate().base64_key)


@cli.command()
def pubkey():
    """Read a private key on stdin and print its public key."""
    key = PrivateKey.from_base64(sys.stdin.read().strip())
    if key is None:
        click.echo("Error: invalid private key", err=True)
        sys.exit(1)
    click.echo(key.public_key.base64_key)


@cli.command(name="list")
@click.pass_obj
def list_tunnels(settings):
    """List stored tunnels."""
    manager = _open_manager(settings)
    for index in range(manager.number_of_tunnels()):
        tunnel = manager.tunnel_at(index)
        on_demand = " (on-demand)" if tunnel.is_activate_on_demand_enabled else ""
        click.echo(f"{tunnel.name}\t{tunnel.profile.server_address}\t{tunnel.status}{on_demand}")


@cli.command(name="import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", default=None, help="Tunnel name, defaults to the file name.")
@click.option("--on-demand", is_flag=True, help="Enable activate on demand.")
@click.pass_obj
def import_tunnel(settings, path, name, on_demand):
    """Store a wg-quick file, or every .conf in a zip archive, as new tunnels."""
    if path.lower().endswith(".zip"):
        if name is not None:
            click.echo("Error: --name cannot be used with a zip archive", err=True)
            sys.exit(1)
        _import_archive(settings, path)
        return
    if name is None:
        name = os.path.splitext(os.path.basename(path))[0]
    config = _read_config(path, name=name)
    manager = _open_manager(settings)
    try:
        manager.add(config, on_demand_enabled=on_demand)
    except TunnelctlError as e:
        _fail(e)
    click.echo(f"Imported tunnel '{name}'")


def _import_archive(settings, path):
    try:
        configs = archive.import_configurations(path)
    except TunnelctlError as e:
        _fail(e)
    manager = _open_manager(settings)
    added, last_error = manager.add_multiple([config for config in configs if config is not None])
    click.echo(f"Imported {added} of {len(configs)} tunnels")
    if last_error is not None:
        _fail(last_error)
    if added < len(configs):
        sys.exit(1)


@cli.command()
@click.argument("name", required=False)
@click.option("--all", "archive_path", default=None, type=click.Path(dir_okay=False),
              help="Write every stored tunnel to this zip archive instead.")
@click.pass_obj
def export(settings, name, archive_path):
    """Print a stored tunnel as wg-quick text, or zip up all of them."""
    if (name is None) == (archive_path is None):
        click.echo("Error: give either a tunnel name or --all OUT.zip", err=True)
        sys.exit(1)
    manager = _open_manager(settings)
    if archive_path is not None:
        tunnels = [manager.tunnel_at(index) for index in range(manager.number_of_tunnels())]
        configs = [tunnel.tunnel_configuration(manager.credentials) for tunnel in tunnels]
        try:
            written = archive.export_configurations([c for c in configs if c is not None], archive_path)
        except TunnelctlError as e:
            _fail(e)
        click.echo(f"Exported {written} tunnel(s) to {archive_path}")
        return
    config = _tunnel_or_fail(manager, name).tunnel_configuration(manager.credentials)
    if config is None:
        click.echo(f"Error: configuration for '{name}' is unreadable", err=True)
        sys.exit(1)
    click.echo(wgquick.serialize(config), nl=False)


@cli.command()
@click.argument("name")
@click.pass_obj
def remove(settings, name):
    """Delete a stored tunnel."""
    manager = _open_manager(settings)
    try:
        manager.remove(_tunnel_or_fail(manager, name))
    except TunnelctlError as e:
        _fail(e)
    click.echo(f"Removed tunnel '{name}'")


class _ForegroundListener(TunnelActivationListener):
    def __init__(self):
        self.finished = threading.Event()
        self.error = None

    def activation_failed(self, tunnel, error):
        self.error = error
        self.finished.set()

    def activation_succeeded(self, tunnel):
        click.echo(f"Tunnel '{tunnel.name}' is up. Press Ctrl-C to stop.")


@cli.command()
@click.argument("name")
@click.pass_obj
def up(settings, name):
    """Bring a tunnel up and keep it running in the foreground."""
    manager = _open_manager(settings)
    tunnel = _tunnel_or_fail(manager, name)
    listener = _ForegroundListener()
    manager.add_activation_listener(listener)

    def on_status(_tunnel, status):
        if status == TunnelStatus.INACTIVE:
            listener.finished.set()
    tunnel.add_status_listener(on_status)
    try:
        manager.start_activation(tunnel)
        listener.finished.wait()
    except TunnelctlError as e:
        _fail(e)
    except KeyboardInterrupt:
        manager.start_deactivation(tunnel)
        listener.finished.wait()
    finally:
        tunnel.remove_status_listener(on_status)
        tunnel.session.close()
    if listener.error is not None:
        _fail(listener.error)


if __name__ == "__main__":
    cli()
