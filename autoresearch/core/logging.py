import logging
from pathlib import Path
from typing import Optional

from pythonjsonlogger.json import JsonFormatter

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the root logger with console and JSON file output."""
    root = logging.getLogger()
    root.setLevel(level.upper())

    # Remove any existing handlers so repeated calls don't duplicate output
    root.handlers = []

    ch = logging.StreamHandler()
    ch.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    root.addHandler(ch)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        # create a json formatter for structured logging
        fh = logging.FileHandler(path)
        fh.setFormatter(JsonFormatter(LOG_FORMAT))
        root.addHandler(fh)


def setup_job_logger(job_id: str) -> logging.LoggerAdapter:
    """Return a logger that tags every record with the research job id."""
    logger = logging.getLogger("autoresearch.jobs")
    return logging.LoggerAdapter(logger, {"job_id": job_id})
