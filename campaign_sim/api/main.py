"""
Campaign Simulator API Server Entry Point.

Run with:
    python -m campaign_sim.api.main

Or with uvicorn directly:
    uvicorn campaign_sim.api.main:app --reload --host 0.0.0.0 --port 8000
"""

import argparse
import logging
import os
from pathlib import Path

import uvicorn

from ..config import CONFIG_ENV_VAR, load_config
from ..simulation.runner import CampaignSimulation
from .server import create_app


DATA_DIR_ENV_VAR = "CAMPAIGN_SIM_DATA_DIR"
START_ENV_VAR = "CAMPAIGN_SIM_START"


def main():
    """Main entry point for the campaign simulator API server."""
    parser = argparse.ArgumentParser(description="Campaign Simulator API Server")
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to a JSON config file (default: ${CONFIG_ENV_VAR} or ./campaign_sim.json)",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Persist cycles and polls as JSON under this directory (default: in memory)",
    )
    parser.add_argument(
        "--start",
        default=None,
        help="Initial game time, ISO-8601 (default: 2025-01-01T00:00:00Z)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Set environment variables for configuration
    if args.config:
        os.environ[CONFIG_ENV_VAR] = str(Path(args.config).resolve())
    if args.data_dir:
        os.environ[DATA_DIR_ENV_VAR] = str(Path(args.data_dir).resolve())
    if args.start:
        os.environ[START_ENV_VAR] = args.start

    print("Starting Campaign Simulator API Server")
    print(f"  Host: {args.host}")
    print(f"  Port: {args.port}")
    print(f"  Config: {os.environ.get(CONFIG_ENV_VAR, 'defaults')}")
    print(f"  Data: {args.data_dir or 'in memory'}")
    print()

    uvicorn.run(
        "campaign_sim.api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="debug" if args.debug else "info",
    )


def get_app():
    """Factory function for creating the FastAPI app from the environment."""
    config = load_config()
    simulation = CampaignSimulation.create(
        config,
        start=os.environ.get(START_ENV_VAR),
        data_dir=os.environ.get(DATA_DIR_ENV_VAR),
    )
    return create_app(simulation)


# App instance for direct uvicorn usage
app = get_app()


if __name__ == "__main__":
    main()
