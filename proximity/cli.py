"""
Proximity CLI
=============
Loads the configuration, builds the proxy and serves until interrupted.
"""

from __future__ import annotations

import sys
import time
from pathlib import Path

import click
from dotenv import load_dotenv

from proximity import __version__
from proximity.config import CONFIG_FILE, ProxyConfig, load_config, save_config
from proximity.core.errors import CertificateLoadError, ConfigError, InvalidURL
from proximity.core.rewrite import validate_upstream
from proximity.core.server import ProximityProxy
from proximity.ui import (
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
    show_banner,
    show_config_status,
    show_counters,
)

load_dotenv()


def _load(ctx: click.Context) -> ProxyConfig:
    """Resolve the effective config, exiting with status 1 when it is invalid."""
    params = ctx.obj
    try:
        config = load_config(params.get("config_file"), params.get("overrides"))
        validate_upstream(config.remote)
    except (ConfigError, InvalidURL) as e:
        print_error(str(e))
        sys.exit(1)
    return config


def serve_proxy(config: ProxyConfig, debug: bool = False) -> int:
    """Run the proxy in the foreground; returns the process exit status."""
    setup_logging(config.verbosity, debug)
    show_banner()
    if config.no_verify:
        print_warning("Upstream TLS certificates are NOT verified")

    try:
        proxy = ProximityProxy(config)
    except CertificateLoadError as e:
        print_error(str(e))
        return 1

    result = proxy.start(background=True)
    if not result["ok"]:
        print_error(result["error"])
        return 1
    print_success(result["message"])

    try:
        while proxy.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        print_info("Shutting down...")
    stats = proxy.stop()
    if stats.get("ok"):
        show_counters(stats)
    return 0


@click.group(invoke_without_command=True)
@click.option("--config", "-c", "config_file", default=None, type=click.Path(dir_okay=False, path_type=Path),
              help=f"Config file (default: {CONFIG_FILE})")
@click.option("--listen", "-l", default=None, help="Local address, e.g. :9999")
@click.option("--remote", "-r", default=None, help="Upstream URL, e.g. https://api.example.com")
@click.option("--cert", "cert_file", default=None, help="A PEM encoded certificate file")
@click.option("--key", "key_file", default=None, help="A PEM encoded private key file")
@click.option("--no-verify/--verify", "no_verify", default=None, help="Do not verify TLS/SSL certificates")
@click.option("--verbosity", "-v", default=None, type=click.IntRange(0, 3),
              help="1: only params, 2: add request and response headers, 3: add request and response body")
@click.option("--metrics-interval", "-m", default=None, type=click.IntRange(min=1),
              help="Interval of metrics logging in seconds")
@click.option("--timeout", "-t", default=None, type=click.FloatRange(min=0, min_open=True),
              help="Upstream timeout in seconds")
@click.option("--debug", is_flag=True, help="Debug logging")
@click.version_option(__version__, prog_name="proximity")
@click.pass_context
def main(ctx, config_file, listen, remote, cert_file, key_file, no_verify, verbosity,
         metrics_interval, timeout, debug):
    """Proximity: forward every request to one upstream."""
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file
    ctx.obj["debug"] = debug
    ctx.obj["overrides"] = {
        "listen": listen,
        "remote": remote,
        "cert_file": cert_file,
        "key_file": key_file,
        "no_verify": no_verify,
        "verbosity": verbosity,
        "metrics_interval": metrics_interval,
        "timeout": timeout,
    }

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve)


@main.command()
@click.pass_context
def serve(ctx):
    """Start the proxy (default command)."""
    config = _load(ctx)
    sys.exit(serve_proxy(config, ctx.obj.get("debug", False)))


@main.command()
@click.option("--save", is_flag=True, help="Write the effective configuration to the config file")
@click.pass_context
def config(ctx, save):
    """Show the effective configuration."""
    cfg = _load(ctx)
    show_config_status(cfg.to_dict())
    if save:
        path = save_config(cfg, ctx.obj.get("config_file"))
        print_success(f"Configuration saved to {path}")


if __name__ == "__main__":
    main()
