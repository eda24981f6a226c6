"""Serve: run the FastAPI intake server for SharePoint change notifications."""

import os
import sys

import typer
import uvicorn

from listrelay.config import UIPATH_ENABLED, WEBHOOK_PORT
from listrelay.webhook.server import create_app

from .shared import console, logger


def serve(
    port: int = typer.Option(WEBHOOK_PORT, "--port", "-p", help="Port for the intake server"),
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Bind host"),
) -> None:
    """Start the notification intake server."""
    log = logger.bind(command="serve", port=port)
    log.info("serve.start")

    required = ("AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET")
    missing = [k for k in required if not os.getenv(k)]
    if missing:
        console.print(f"[red]Missing environment variables: {', '.join(missing)}[/red]")
        log.warning("serve.missing_env", missing=missing)
        raise typer.Exit(1)
    if not UIPATH_ENABLED:
        console.print("[yellow]UIPATH_ENABLED is false: queue submissions will be skipped.[/yellow]")

    app = create_app()

    console.print(f"[green]Starting intake server on http://{host}:{port}[/green]")
    console.print(
        "[dim]Endpoints: GET/POST /webhook/notifications, GET /health, GET /processors, GET /auth/cache-stats[/dim]"
    )
    try:
        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level="info",
            timeout_graceful_shutdown=15,
        )
    except KeyboardInterrupt:
        console.print("\n[dim]Shutting down...[/dim]")
        sys.exit(0)
