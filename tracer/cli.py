"""
CLI interface for the trace proxy.
"""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

import typer
import uvicorn

from tracer import __version__

app = typer.Typer(
    name="llm-tracer",
    help="Transparent Messages API proxy that records and streams every call",
    rich_markup_mode="rich",
)


@app.command()
def start(
    host: Optional[str] = typer.Option(
        "127.0.0.1", "--host", help="Host to bind the proxy to"
    ),
    port: Optional[int] = typer.Option(3000, "--port", "-p", help="Proxy port"),
    reload: Optional[bool] = typer.Option(
        False, "--reload", help="Enable auto-reload for development"
    ),
    log_level: Optional[str] = typer.Option(
        "info", "--log-level", help="Log level for the server"
    ),
):
    """
    Start the trace proxy.

    Point your client at the proxy by setting ANTHROPIC_BASE_URL.
    """
    typer.echo(f"Starting trace proxy on http://{host}:{port}")
    typer.echo(f"  export ANTHROPIC_BASE_URL=\"http://{host}:{port}\"")
    typer.echo(f"  live events: ws://{host}:{port}/ws")
    uvicorn.run(
        "tracer.main:app", host=host, port=port, reload=reload, log_level=log_level
    )


@app.command()
def export(
    export_format: str = typer.Option(
        "json", "--format", "-f", help="Export format (json, csv)"
    ),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Output file (stdout when omitted)"
    ),
    session: Optional[str] = typer.Option(
        None, "--session", "-s", help="Only export traces of this session"
    ),
    limit: int = typer.Option(100, "--limit", help="Maximum traces when no session is given"),
):
    """Export captured traces to a file."""
    from tracer.database import crud, models
    from tracer.database.database import SessionLocal, engine

    models.Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        content = crud.export_traces(
            db, export_format=export_format, session_id=session, limit=limit
        )
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    finally:
        db.close()

    if output is None:
        typer.echo(content)
        return
    output.write_text(content, encoding="utf-8")
    typer.echo(f"Exported traces to {output}")


@app.command()
def version():
    """Show the version of the trace proxy."""
    typer.echo(f"llm-tracer version {__version__}")


def main():
    """Main entry point for the CLI."""
    app()
