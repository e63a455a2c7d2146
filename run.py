#!/usr/bin/env python3
"""
Portfolio Staking Entry Point

Starts the FastAPI server and the daily interest accrual scheduler.
"""

import sys

import uvicorn

from portfolio_staking.api import create_app
from portfolio_staking.config import get_config
from portfolio_staking.logging_config import setup_logging
from portfolio_staking.system import StakingSystem


def main() -> None:
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)

    system = StakingSystem(config)
    app = create_app(system)

    print("Starting Portfolio Staking Core...")
    print(f"Storage: {config.storage_backend}")
    if config.scheduler_enabled:
        print(f"Daily accrual at {config.accrual_hour:02d}:{config.accrual_minute:02d} {config.accrual_timezone}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    system.start()
    try:
        uvicorn.run(app, host=config.api_host, port=config.api_port, log_level="info")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
    finally:
        system.shutdown()


if __name__ == "__main__":
    main()
