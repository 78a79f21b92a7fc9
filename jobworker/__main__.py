#!/usr/bin/env python3
"""
Worker Service Entry Point

Starts the worker service using configuration from environment variables.
"""

import logging
import sys

from .api_client import ControllerAPIClient
from .channels import ExecutionChannel
from .config import WorkerConfig
from .discovery import get_discovery_client
from .errors import WorkerError
from .executor import JobRegistry
from .jobs import register_sample_jobs
from .service import WorkerService

logger = logging.getLogger('jobworker')


def build_service(config: WorkerConfig) -> WorkerService:
    """Wire discovery, transport, channel and job registry for a configuration."""
    discovery = get_discovery_client(config)
    api_client = ControllerAPIClient(
        discovery,
        service_name=config.controller_service,
        client_name=config.worker_name,
        timeout=config.request_timeout
    )
    channel = ExecutionChannel(api_client)

    registry = JobRegistry()
    register_sample_jobs(registry)

    return WorkerService(config, channel, registry)


def main():
    """Main entry point for worker service."""
    try:
        # Load configuration from environment
        config = WorkerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    errors = config.validate()
    if errors:
        logger.error("Configuration errors:")
        for error in errors:
            logger.error(f"  - {error}")
        sys.exit(1)

    logger.info(f"Worker configuration: {config.to_dict()}")

    try:
        service = build_service(config)
        service.run()
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")
        sys.exit(0)
    except WorkerError as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
