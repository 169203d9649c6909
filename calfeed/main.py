from __future__ import annotations

import logging
import os

import uvicorn

from calfeed.config_manager import ConfigManager
from calfeed.models import LoggingConfig


def configure_logging(config: LoggingConfig) -> None:
    level = os.getenv("CALFEED_LOG_LEVEL", "").strip().upper() or config.level
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=config.format)
    # urllib3 logs every pooled connection at DEBUG.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def main() -> None:
    config = ConfigManager(os.getenv("CALFEED_CONFIG_PATH", "config.yaml")).load()
    configure_logging(config.logging)
    host = os.getenv("CALFEED_HOST", "0.0.0.0")
    port = int(os.getenv("CALFEED_PORT", "8080"))
    uvicorn.run("calfeed.web_admin:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
