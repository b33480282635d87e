"""Command line interface for the WebDAV S3 Gateway."""

import json
from typing import Any, Optional

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from webdav_s3_gateway import __version__
from webdav_s3_gateway.config import settings
from webdav_s3_gateway.s3.presign import create_presigned_url

console = Console()
error_console = Console(stderr=True)

# Settings that are masked in `config` output
SECRET_FIELDS = {"webdav_password", "s3_secret_access_key"}

app = typer.Typer(
    name="webdav-s3-gateway",
    help="S3-compatible API gateway in front of a WebDAV server",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        print(f"webdav-s3-gateway version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
) -> None:
    """WebDAV S3 Gateway - serve S3 clients from a WebDAV backing store."""


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    error_console.print(f"[red]Error: {message}[/red]")


def mask_secret(value: str) -> str:
    """Show only the last four characters of a secret."""
    if not value:
        return ""
    if len(value) <= 4:
        return "****"
    return "****" + value[-4:]


def settings_as_dict() -> dict[str, Any]:
    """Current settings with secrets masked."""
    data = settings.model_dump()
    for name in SECRET_FIELDS:
        data[name] = mask_secret(data[name])
    return data


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: HOST setting)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port (default: PORT setting)"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the gateway with uvicorn."""
    import uvicorn

    missing = settings.missing_required()
    if missing:
        print_error(f"Missing required settings: {', '.join(missing)}")
        raise typer.Exit(1)

    uvicorn.run(
        "webdav_s3_gateway.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


@app.command("presign")
def presign(
    bucket: str = typer.Argument(..., help="Bucket name"),
    key: str = typer.Argument(..., help="Object key"),
    expires: Optional[int] = typer.Option(
        None, "--expires", "-e",
        help="URL lifetime in seconds (default: PRESIGN_DEFAULT_EXPIRY)"
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Create a pre-signed GET URL for an object.

    The URL points at BASE_URL and is signed with the gateway's own
    credential, so the gateway accepts it without further authentication.
    """
    if not settings.s3_access_key_id or not settings.s3_secret_access_key:
        print_error("S3_ACCESS_KEY_ID and S3_SECRET_ACCESS_KEY must be set")
        raise typer.Exit(1)

    expires_in = expires if expires is not None else settings.presign_default_expiry
    if expires_in > settings.presign_max_expiry:
        print_error(f"--expires must not exceed {settings.presign_max_expiry} seconds")
        raise typer.Exit(1)

    try:
        url = create_presigned_url(settings.credential, settings.base_url, bucket, key, expires_in=expires_in)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if json_output:
        print(json.dumps({"url": url, "bucket": bucket, "key": key, "expires_in": expires_in}, indent=2))
    else:
        print(url)


@app.command("config")
def show_config(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show the effective configuration.

    Values come from environment variables and the .env file. Secrets are
    masked.
    """
    data = settings_as_dict()
    missing = settings.missing_required()

    if json_output:
        print(json.dumps({"settings": data, "missing": missing}, indent=2, default=str))
        return

    table = Table(title="Current Configuration", box=box.ROUNDED, show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for name, value in data.items():
        if isinstance(value, bool):
            value_str = "Yes" if value else "No"
        elif isinstance(value, (list, dict)):
            value_str = json.dumps(value)
        else:
            value_str = str(value)
        table.add_row(name, value_str)
    console.print(table)

    if missing:
        console.print(f"[yellow]Warning: missing required settings: {', '.join(missing)}[/yellow]")


if __name__ == "__main__":
    app()
