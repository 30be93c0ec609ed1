import logging
import os
import structlog
import sys
from pathlib import Path
from dotenv import load_dotenv

_QUIET_LOGGERS = ("httpx", "httpcore", "redis")


def _renderer(fmt: str):
    if fmt == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer()


def setup_logging(level: str | None = None, fmt: str | None = None):
    """Route structlog events through stdlib logging.

    LOG_LEVEL picks the stdout threshold, LOG_FORMAT is ``json`` (default) or
    ``console``, and LOG_ERROR_FILE, when set, receives ERROR and above.
    """
    load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    fmt = (fmt or os.getenv("LOG_FORMAT", "json")).strip().lower()
    error_log_path = os.getenv("LOG_ERROR_FILE", "").strip()

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)

    plain = logging.Formatter("%(message)s")
    stdout = logging.StreamHandler(sys.stdout)
    stdout.setLevel(log_level)
    stdout.setFormatter(plain)
    root.addHandler(stdout)

    if error_log_path:
        Path(error_log_path).parent.mkdir(parents=True, exist_ok=True)
        errors = logging.FileHandler(error_log_path)
        errors.setLevel(logging.ERROR)
        errors.setFormatter(plain)
        root.addHandler(errors)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            _renderer(fmt),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        cache_logger_on_first_use=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(log_level)
