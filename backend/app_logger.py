import logging
import time
from logging.handlers import RotatingFileHandler

from fastapi import FastAPI, Request

from backend.config import LOG_BACKUP_COUNT, LOG_FILE, LOG_LEVEL, LOG_MAX_BYTES, LOG_TO_FILE

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
ROOT_LOGGER_NAME = "mealcard"


def setup_logging() -> logging.Logger:
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    # Avoid duplicate handlers when the app module is re-imported (tests, reload)
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler) for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(ch)

    if LOG_TO_FILE and not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(
            LOG_FILE,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        fh.setFormatter(logging.Formatter(LOG_FORMAT + " [in %(pathname)s:%(lineno)d]"))
        logger.addHandler(fh)

    logger.propagate = False
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = logging.getLogger(ROOT_LOGGER_NAME)
    return base.getChild(name) if name else base


def install_request_logging(app: FastAPI) -> None:
    """Log method, path, status and elapsed time for every request."""
    request_logger = get_logger("http")

    @app.middleware("http")
    async def log_request_time(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        client_ip = request.client.host if request.client else "-"
        request_logger.info(
            "%s %s %s -> %s in %.4fs",
            client_ip,
            request.method,
            request.url.path,
            response.status_code,
            elapsed,
        )
        response.headers["X-Process-Time"] = str(round(elapsed, 4))
        return response
