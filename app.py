"""
Main FastAPI application entry point for the fleet capacity controller
"""

import argparse
import os
import sys
from typing import Optional

from fastapi import FastAPI

from fleetctl.api.api_routes import create_app
from fleetctl.config.config_manager import create_sample_config, load_config, set_config
from fleetctl.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def build_app(config_path: Optional[str] = None, api_prefix: str = "") -> FastAPI:
    """Load configuration, configure logging and create the app"""
    config = load_config(config_path)
    set_config(config)
    setup_logging(config.logging)

    logger.info("Configuration loaded", fleet=config.fleet_name, provider=config.provider.kind)
    return create_app(api_prefix)


def run_server(
    host: str,
    port: int,
    reload: bool = False,
    config_path: Optional[str] = None,
    api_prefix: str = "",
) -> None:
    """Run the API server with uvicorn"""
    import uvicorn

    logger.info(f"Starting server on {host}:{port}")
    logger.info(f"Reload mode: {'enabled' if reload else 'disabled'}")

    if reload:
        # The reloader imports the factory itself and reads FLEETCTL_CONFIG
        if config_path:
            os.environ["FLEETCTL_CONFIG"] = config_path
        uvicorn.run(
            "app:build_app",
            factory=True,
            host=host,
            port=port,
            reload=True,
            reload_dirs=["fleetctl"],
            log_level="info",
        )
        return

    uvicorn.run(
        build_app(config_path, api_prefix),
        host=host,
        port=port,
        log_level="info",
        access_log=True,
    )


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Fleet Capacity Controller API Server")
    parser.add_argument("--config", default=None, help="Path to YAML/JSON config file")
    parser.add_argument("--host", default=None, help="Host to bind to")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")
    parser.add_argument("--api-prefix", default="", help="API prefix path")
    parser.add_argument(
        "--create-sample-config",
        metavar="PATH",
        help="Write a sample configuration file and exit",
    )

    args = parser.parse_args(argv)

    if args.create_sample_config:
        path = create_sample_config(args.create_sample_config)
        logger.info(f"Sample configuration written to {path}")
        return

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        run_server(
            host=args.host or config.api_host,
            port=args.port or config.api_port,
            reload=args.reload,
            config_path=args.config,
            api_prefix=args.api_prefix,
        )
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")


if __name__ == "__main__":
    main()
