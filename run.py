#!/usr/bin/env python3
"""
Caseflow Entry Point

Starts the workflow API server together with the SLA monitor and the
notification worker.
"""

import sys

import uvicorn

from caseflow.api import create_app
from caseflow.config import get_config
from caseflow.logging_config import setup_logging
from caseflow.system import WorkflowSystem


def main() -> int:
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    try:
        system = WorkflowSystem.from_config(config)
    except Exception as e:
        logger.critical(f"Startup failed: {e}")
        return 1

    system.start()
    logger.info(f"API available at http://{config.api_host}:{config.api_port} (docs at /docs)")
    try:
        uvicorn.run(create_app(system), host=config.api_host, port=config.api_port, log_level="info")
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        system.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
