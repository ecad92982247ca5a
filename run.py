#!/usr/bin/env python3
"""
Account Chain Worker Entry Point

Starts every consumer of the provisioning chain and relays the outbox.
Transport, storage and collaborators are selected from CHAIN_* settings.
"""

import sys
import time
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from account_chain.bus import InMemoryEventBus
from account_chain.config import get_config
from account_chain.logging_config import setup_logging
from account_chain.system import ProvisioningSystem


def main() -> int:
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    system = ProvisioningSystem(config)
    transport = "kafka" if config.kafka_bootstrap_servers else "in-memory"
    logger.info(f"Starting account chain worker ({transport} bus, storage {config.database_url})")
    system.start()

    try:
        while True:
            relayed = system.relay_outbox()
            if isinstance(system.bus, InMemoryEventBus):
                system.bus.run_until_idle()
            if not relayed:
                time.sleep(config.kafka_poll_timeout_seconds)
    except KeyboardInterrupt:
        logger.info("Shutting down account chain worker")
    finally:
        system.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
