"""Click-based CLI entrypoint for git-proxy.

Commands:
    serve         run the HTTP tool server
    exec          run one operation through the pipeline and print the result
    check-config  validate the configuration file and print the effective values
"""

from __future__ import annotations

import json
import os
import signal
import sys

import click

from git_proxy.audit import AuditEvent, ShutdownReason
from git_proxy.config import ProxyConfig, load_config
from git_proxy.errors import ConfigError
from git_proxy.logging_config import get_logger, setup_logging
from git_proxy.models import OperationRequest
from git_proxy.pipeline import GitPipeline

logger = get_logger(__name__)


class _Terminated(Exception):
    """Raised from the SIGTERM handler to unwind the server loop."""


def _load(config_path: str | None) -> ProxyConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(2)
    setup_logging(level=config.logging.level, format_type=config.logging.format)
    return config


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to config.yaml (default: $GIT_PROXY_CONFIG or ~/.config/git-proxy/config.yaml).",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Guarded remote git operations for automated callers."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.option("--host", default=None, help="Bind address (default: $GIT_PROXY_BIND or 127.0.0.1).")
@click.option("--port", type=int, default=None, help="TCP port (default: $GIT_PROXY_PORT or 8084).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the git tool HTTP server."""
    from git_proxy.api import API_BIND, API_PORT, create_app, run_server

    config = _load(ctx.obj["config_path"])
    pipeline = GitPipeline(config.security)
    app = create_app(pipeline)

    def _on_sigterm(signum, frame):
        raise _Terminated()

    signal.signal(signal.SIGTERM, _on_sigterm)

    pipeline.audit_logger.log(AuditEvent.server_started())
    reason = ShutdownReason.CLIENT_DISCONNECTED
    try:
        run_server(app, host=host or API_BIND, port=port or API_PORT)
    except KeyboardInterrupt:
        reason = ShutdownReason.SIGINT
    except _Terminated:
        reason = ShutdownReason.SIGTERM
    finally:
        logger.info(f"Git proxy shutting down ({reason.value})")
        pipeline.audit_logger.log(AuditEvent.server_stopped(reason))
        pipeline.audit_logger.close()


@cli.command(
    "exec",
    context_settings={"ignore_unknown_options": True, "allow_interspersed_args": False},
)
@click.argument("operation")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.option(
    "--cwd",
    "working_directory",
    default=None,
    help="Absolute working directory (default: current directory).",
)
@click.pass_context
def exec_cmd(
    ctx: click.Context,
    operation: str,
    args: tuple[str, ...],
    working_directory: str | None,
) -> None:
    """Run OPERATION [ARGS]... once and print the JSON result.

    Options for this command go before OPERATION; everything after it is
    passed to git. Exits with status 1 when the result is an error.
    """
    config = _load(ctx.obj["config_path"])
    pipeline = GitPipeline(config.security)
    request = OperationRequest(
        operation=operation,
        args=list(args),
        working_directory=working_directory or os.getcwd(),
    )
    try:
        result = pipeline.handle(request)
    finally:
        pipeline.audit_logger.close()
    click.echo(json.dumps(result.to_dict(), indent=2))
    if result.is_error:
        sys.exit(1)


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context) -> None:
    """Validate the configuration and print the effective values."""
    config = _load(ctx.obj["config_path"])
    click.echo(json.dumps(config.to_dict(), indent=2))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
