"""Entry point: ``python -m visualizer`` or the ``led-visualizer`` script."""

import asyncio
import logging
import os
import sys

from .errors import ConfigError
from .lib.config import require
from .service import VisualizerService


def main():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format='[%(levelname)s] %(message)s',
    )

    try:
        require()
    except ConfigError as e:
        logging.getLogger("led-visualizer").error("FATAL: %s", e)
        sys.exit(1)

    service = VisualizerService()
    asyncio.run(service.run())


if __name__ == '__main__':
    main()
