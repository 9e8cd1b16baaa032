import logging
import os

from rich.logging import RichHandler

logging.basicConfig(
    level=os.environ.get("DOCSEQ_LOG_LEVEL", "ERROR").upper(),
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True)],
)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
