import click
import uvicorn

from buddylynk_backend.logging_config import configure_module_logging, setup_logging


@click.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Bind address")
@click.option("--port", default=8000, show_default=True, type=int, help="Bind port")
@click.option("--workers", default=1, show_default=True, type=int, help="Worker processes")
@click.option("--reload", is_flag=True, default=False, help="Reload on code changes (development)")
def serve(host: str, port: int, workers: int, reload: bool):
    """Run the API and realtime socket server."""
    setup_logging()
    configure_module_logging()

    uvicorn.run(
        "buddylynk_backend.server:app",
        host=host,
        port=port,
        workers=workers if not reload else 1,
        reload=reload,
        log_config=None,
    )
