import logging
import os
import sys
from .config import Config


LOGGER_NAME = "tweetgate.autonomy"

_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_CYAN = "\033[36m"
_MAGENTA = "\033[35m"
_GREEN = "\033[32m"
_YELLOW = "\033[33m"
_RED = "\033[31m"
_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[31m",
}


def _stream_supports_color() -> bool:
    if os.getenv("NO_COLOR"):
        return False
    force = os.getenv("FORCE_COLOR", "").strip().lower()
    if force in {"1", "true", "yes"}:
        return True
    return bool(sys.stderr.isatty())


class ColorFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        level_name = record.levelname.upper()
        color = _COLORS.get(level_name, "")
        if not color:
            return message

        # Highlight approval lifecycle phases so reviewers can scan the console quickly.
        if "ENQUEUED" in message:
            painted = f"{_BOLD}{_CYAN}[QUEUE] {message}{_RESET}"
        elif "DECISION" in message:
            painted = f"{_BOLD}{_MAGENTA}[DECISION] {message}{_RESET}"
        elif "ACTION SENT" in message:
            painted = f"{_BOLD}{_GREEN}[SENT] {message}{_RESET}"
        elif "ACTION ERROR" in message:
            painted = f"{_BOLD}{_RED}[ERROR] {message}{_RESET}"
        elif "Skipping duplicate" in message:
            painted = f"{_DIM}{_YELLOW}{message}{_RESET}"
        elif "Sleeping seconds=" in message:
            painted = f"{_DIM}{color}{message}{_RESET}"
        elif "WARNING" in message:
            painted = f"{_BOLD}{_YELLOW}{message}{_RESET}"
        else:
            painted = f"{color}{message}{_RESET}"
        return painted


def get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def setup_logging(cfg: Config) -> logging.Logger:
    level = getattr(logging, cfg.log_level, logging.INFO)
    logger = get_logger()
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(
        fmt="%(asctime)sZ %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stream_handler = logging.StreamHandler()
    if _stream_supports_color():
        stream_handler.setFormatter(
            ColorFormatter(
                fmt="%(asctime)sZ %(levelname)s %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )
    else:
        stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if cfg.log_path:
        cfg.log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(cfg.log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
