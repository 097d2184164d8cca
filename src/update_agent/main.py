"""FastAPI application and command line entry point for the update agent."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import click
from fastapi import FastAPI
import uvicorn

from update_agent import __version__
from update_agent.api.routes import router
from update_agent.errors import ConfigError
from update_agent.services.settings_store import SettingsStore, load_settings
from update_agent.services.state_machine import StateMachine
from update_agent.utils.logging import TRACE, setup_logger

DEFAULT_CONFIG_PATH = "/etc/update-agent/settings.json"
CONFIG_ENV = "UPDATE_AGENT_CONFIG"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Initialize logger
    - Load settings (a ConfigError aborts startup)
    - Load runtime settings and build the state machine
    - Start the state machine background task

    Shutdown:
    - Stop the state machine and wait for its task
    """
    # Startup
    logger = setup_logger(
        "update_agent",
        getattr(app.state, "log_file", "./logs/update-agent.log"),
        level=getattr(app.state, "log_level", logging.INFO),
    )
    logger.info(f"Update agent {__version__} starting up...")

    config_path = Path(
        getattr(app.state, "config_path", None)
        or os.environ.get(CONFIG_ENV, DEFAULT_CONFIG_PATH)
    )
    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        raise

    store = SettingsStore(settings)
    machine = StateMachine(store)
    app.state.machine = machine

    task = asyncio.create_task(machine.run())
    logger.info(
        f"Update agent ready on {settings.network.listen_host}:{settings.network.listen_port}"
    )

    yield

    # Shutdown
    logger.info("Update agent shutting down...")
    machine.stop()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


# Create FastAPI application
app = FastAPI(
    title="Update Agent",
    description="OTA update agent for embedded Linux devices",
    version=__version__,
    lifespan=lifespan,
)

# Register API routes
app.include_router(router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "update-agent", "version": __version__}


@click.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    envvar=CONFIG_ENV,
    help=f"Settings file (default {DEFAULT_CONFIG_PATH})",
)
@click.option("-v", "--verbose", count=True, help="Increase log verbosity (-vv for trace)")
@click.version_option(__version__)
def main(config_path, verbose):
    """Run the update agent and its local control API."""
    config_path = config_path or Path(DEFAULT_CONFIG_PATH)
    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e))

    app.state.config_path = config_path
    app.state.log_level = {0: logging.INFO, 1: logging.DEBUG}.get(verbose, TRACE)

    uvicorn.run(
        app,
        host=settings.network.listen_host,
        port=settings.network.listen_port,
        log_level="debug" if verbose else "info",
        access_log=True,
    )


if __name__ == "__main__":
    main()
