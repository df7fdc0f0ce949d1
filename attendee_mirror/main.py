from __future__ import annotations

import logging
import os

import uvicorn

from attendee_mirror.config_manager import ConfigManager
from attendee_mirror.state_store import StateStore
from attendee_mirror.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    level_name = os.getenv("ATTENDEE_MIRROR_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    """Run a single synchronization pass; meant to be called by an external trigger."""
    _configure_logging()
    config_manager = ConfigManager(os.getenv("ATTENDEE_MIRROR_CONFIG_PATH", "config.yaml"))
    state_store = StateStore(os.getenv("ATTENDEE_MIRROR_STATE_PATH", "data/state.db"))
    result = SyncEngine(config_manager, state_store).run_once(trigger="scheduled")
    logger.info("Sync finished: %s", result.to_dict())


def serve() -> None:
    _configure_logging()
    host = os.getenv("ATTENDEE_MIRROR_HOST", "0.0.0.0")
    port = int(os.getenv("ATTENDEE_MIRROR_PORT", "8080"))
    uvicorn.run("attendee_mirror.web_admin:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
