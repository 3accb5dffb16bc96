import logging
import threading
from datetime import datetime
from typing import Optional, Tuple

import click
from flask import Flask
from werkzeug.serving import make_server

from .app import create_app
from .cleanup import start_cleanup_scheduler
from .config import (
    KEY_FILENAME,
    SUPPORTED_SIGNATURE_ALGORITHMS,
    ConfigurationError,
    StorehouseConfig,
    load_config,
    resolve_secret,
)
from .events import LoggingNotifier
from .logging_utils import configure_logging
from .signing import Authenticator, parse_field_pairs

logger = logging.getLogger("storehouse.server")


def run_servers(app: Flask, config: StorehouseConfig, host: str) -> None:
    """Serve *app* over HTTP and, when key and cert are configured, HTTPS."""

    https_server = None
    if config.tls_enabled:
        https_server = make_server(
            host,
            config.ssl_port,
            app,
            threaded=True,
            ssl_context=(config.ssl_cert, config.ssl_key),
        )
        threading.Thread(
            target=https_server.serve_forever, name="storehouse-https", daemon=True
        ).start()
        logger.info("listening ssl=true host=%s port=%d", host, config.ssl_port)

    http_server = make_server(host, config.port, app, threaded=True)
    logger.info("listening ssl=false host=%s port=%d", host, config.port)
    try:
        http_server.serve_forever()
    except KeyboardInterrupt:
        logger.info("shutdown_requested")
    finally:
        http_server.server_close()
        if https_server is not None:
            https_server.shutdown()
            https_server.server_close()


@click.group()
def cli() -> None:
    """Signed upload and fetch-to-disk file server."""


@cli.command()
@click.option(
    "-s",
    "--secret",
    help=f"Shared secret. Falls back to STOREHOUSE_SECRET, then to a {KEY_FILENAME} file in the current directory.",
)
@click.option("--nooverwrite", is_flag=True, help="Do not allow files to be overwritten.")
@click.option("--uploadurl", help="Upload route. Default: /upload")
@click.option("--fetchurl", help="Fetch route. Default: /fetch")
@click.option("-d", "--directory", help="Where to store files. Default: ./")
@click.option("--allow-download", "allow_download", is_flag=True, default=None, help="Serve stored files over GET.")
@click.option("--prefix", help="Route prefix for downloads. Default: /")
@click.option("--cors", is_flag=True, default=None, help="Allow cross-origin requests to the write routes.")
@click.option("--cors-origin", help="Allowed CORS origin. Default: *")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("-p", "--port", type=int, help="HTTP port. Default: 8888")
@click.option("--ssl-port", type=int, help="HTTPS port. Default: 4443")
@click.option("--sslkey", type=click.Path(exists=True, dir_okay=False), help="TLS private key file.")
@click.option("--sslcert", type=click.Path(exists=True, dir_okay=False), help="TLS certificate file.")
@click.option("--log-file", help="Also write logs to this rotating file.")
@click.option("--quiet", is_flag=True, help="Do not print upload and fetch events.")
@click.pass_context
def serve(
    ctx: click.Context,
    secret: Optional[str],
    nooverwrite: bool,
    uploadurl: Optional[str],
    fetchurl: Optional[str],
    directory: Optional[str],
    allow_download: Optional[bool],
    prefix: Optional[str],
    cors: Optional[bool],
    cors_origin: Optional[str],
    host: str,
    port: Optional[int],
    ssl_port: Optional[int],
    sslkey: Optional[str],
    sslcert: Optional[str],
    log_file: Optional[str],
    quiet: bool,
) -> None:
    """Start the upload/fetch server."""

    try:
        config = load_config(
            secret=secret,
            overwrite=False if nooverwrite else None,
            upload_url=uploadurl,
            fetch_url=fetchurl,
            directory=directory,
            allow_download=allow_download,
            download_prefix=prefix,
            cors=cors,
            cors_origin=cors_origin,
            port=port,
            ssl_port=ssl_port,
            ssl_key=sslkey,
            ssl_cert=sslcert,
            log_file=log_file,
        )
    except ConfigurationError as error:
        click.echo(ctx.get_help(), err=True)
        click.echo(f"\nError: {error}", err=True)
        ctx.exit(1)

    configure_logging(log_file=config.log_file)
    app = create_app(config, None if quiet else LoggingNotifier())
    scheduler = start_cleanup_scheduler(config)

    if not quiet:
        click.echo(f"*** Storehouse started ( {datetime.now().astimezone().isoformat(timespec='seconds')} )")

    try:
        run_servers(app, config, host)
    finally:
        scheduler.shutdown(wait=False)


@cli.command()
@click.option("-s", "--secret", help="Shared secret (same lookup order as serve).")
@click.option(
    "--algorithm",
    type=click.Choice(SUPPORTED_SIGNATURE_ALGORITHMS),
    default="sha1",
    show_default=True,
)
@click.argument("fields", nargs=-1)
def sign(secret: Optional[str], algorithm: str, fields: Tuple[str, ...]) -> None:
    """Print the signature for FIELDS given as name=value pairs."""

    try:
        resolved = resolve_secret(secret)
    except ConfigurationError as error:
        raise click.UsageError(str(error)) from error
    try:
        pairs = parse_field_pairs(fields)
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="FIELDS") from error
    click.echo(Authenticator(resolved, algorithm).compute_signature(dict(pairs)))


def main() -> None:
    cli()
