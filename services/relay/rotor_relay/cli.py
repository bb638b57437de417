from __future__ import annotations

import random

import typer
from aiohttp import web

from rotor_relay.app import create_app
from rotor_relay.config_io import DEFAULT_CONFIG_PATH, load_config
from rotor_relay.iface import select_controller
from rotor_relay.ipv6 import random_ipv6
from rotor_relay.logs import configure_logging
from rotor_relay.models import Config

app = typer.Typer(no_args_is_help=True)

CONFIG_OPT = typer.Option(
    DEFAULT_CONFIG_PATH,
    "--config",
    "-c",
    help="Путь к YAML конфигурации (переменные окружения IPV6_* её переопределяют)",
)


def _load_config(path: str) -> Config:
    try:
        return load_config(path)
    except ValueError as e:
        raise typer.BadParameter(str(e)) from e


@app.command("serve")
def serve_cmd(config: str = CONFIG_OPT) -> None:
    """Run the relay: pool lifecycle + /status, /health, /fetch."""
    cfg = _load_config(config)
    configure_logging(cfg.log_level)
    web.run_app(
        create_app(cfg),
        host=cfg.server.host,
        port=cfg.server.port,
        print=None,
    )


@app.command("check")
def check_cmd(config: str = CONFIG_OPT) -> None:
    """Проверить, что ротация сконфигурирована и интерфейс поднят."""
    cfg = _load_config(config)
    configure_logging(cfg.log_level)
    rot = cfg.rotation
    if not rot.enabled:
        typer.echo("[rotor] rotation not configured (prefix/subnet empty)")
        raise typer.Exit(code=1)
    ctl = select_controller(rot.interface, debug=rot.debug, sudo=rot.sudo)
    if not ctl.is_up():
        typer.echo(f"[rotor] interface {rot.interface} not found or down ({ctl.platform})")
        raise typer.Exit(code=1)
    typer.echo(f"[rotor] ok: {rot.interface} up, prefix {rot.prefix}:{rot.subnet}::/64")


@app.command("generate")
def generate_cmd(
    config: str = CONFIG_OPT,
    count: int = typer.Option(5, "--count", "-n", min=1, help="Сколько адресов напечатать"),
) -> None:
    """Print random addresses for the configured prefix/subnet (nothing is assigned)."""
    cfg = _load_config(config)
    rot = cfg.rotation
    if not rot.enabled:
        raise typer.BadParameter("rotation.prefix and rotation.subnet must be set")
    rng = random.Random()
    for _ in range(count):
        typer.echo(random_ipv6(rot.prefix, rot.subnet, rng))


if __name__ == "__main__":
    app()
