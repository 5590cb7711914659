"""
image2mesh - Main Entry Point
"""
import sys
import logging

from image2mesh.cli import main as cli_main

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler("image2mesh.log"),
        logging.StreamHandler(sys.stderr),
    ],
)

logger = logging.getLogger(__name__)


def main():
    """Command-line entry point with file + stderr logging"""
    try:
        return cli_main()
    except Exception as e:
        logger.critical("image2mesh failed: %s", e, exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
