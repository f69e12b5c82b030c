import logging
import sys

import uvicorn

from gateway.core.config import get_settings
from gateway.core.errors import ConfigInvalid
from gateway.main import create_app

logger = logging.getLogger("gateway")


def main() -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.INFO,
    )

    try:
        settings = get_settings()
    except ConfigInvalid as exc:
        logger.error("Failed to load configuration: %s", exc)
        sys.exit(1)

    logging.getLogger().setLevel(settings.log_level)
    app = create_app(settings)

    logger.info("Server starting on port %s...", settings.port)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
