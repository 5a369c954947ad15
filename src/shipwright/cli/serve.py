"""
Webhook receiver server command.
"""

from __future__ import annotations

import typer

from shipwright.cli.utils import console

app = typer.Typer(no_args_is_help=True)


@app.command("start")
def start(
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Bind host."),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port."),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload."),
    log_level: str = typer.Option("info", "--log-level", help="Uvicorn log level."),
) -> None:
    """Start the push-event receiver.

    Deployment settings come from SHIPWRIGHT_* variables, runtime
    variables from the environment or a secrets directory.
    """
    import uvicorn

    console.print(f"[bold green]Starting shipwright receiver[/bold green] on {host}:{port}")
    uvicorn.run(
        "shipwright.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )
