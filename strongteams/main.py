from __future__ import annotations

import json
import os
import sys

import uvicorn

from strongteams.config_manager import ConfigManager
from strongteams.engine import build_engine
from strongteams.ledger import ProcessedEventsTracker
from strongteams.logging_setup import setup_logging


def _config_manager() -> ConfigManager:
    return ConfigManager(os.getenv("STRONGTEAMS_CONFIG_PATH", "config.yaml"))


def main() -> None:
    config = _config_manager().load()
    setup_logging(config.logging.level, config.logging.json)
    host = os.getenv("STRONGTEAMS_HOST", "0.0.0.0")
    port = int(os.getenv("STRONGTEAMS_PORT", "8080"))
    uvicorn.run("strongteams.web_admin:create_app", factory=True, host=host, port=port, reload=False)


def run_batch() -> None:
    """Run a single batch, print its summary as JSON and exit non-zero on error."""
    config = _config_manager().load()
    setup_logging(config.logging.level, config.logging.json)
    ledger = ProcessedEventsTracker(os.getenv("STRONGTEAMS_LEDGER_PATH") or config.ledger.path)
    result = build_engine(config, ledger).run_once(trigger="cli")
    print(json.dumps(result.to_dict(), ensure_ascii=False))
    sys.exit(1 if result.status == "error" else 0)


if __name__ == "__main__":
    main()
