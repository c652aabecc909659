import logging
import os
import sys


def setup_logging(mode: str = "cli", debug: bool = False, log_file: str | None = None) -> None:
    """
    Configure logging based on execution mode.

    Args:
        mode: "server" logs to stderr and, when given, a log file; "cli" logs
              to stderr only so progress bars on stdout stay readable.
        debug: If True, overrides LOG_LEVEL to DEBUG.
        log_file: Log file path for server mode (overrides the LOG_FILE env var).

    Environment variables:
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR).
                   Default: INFO for server mode, WARNING for CLI mode.
        LOG_FILE: Log file path for server mode.
    """
    default_level = "INFO" if mode == "server" else "WARNING"
    env_level = os.getenv("LOG_LEVEL", default_level).upper()

    if debug:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, env_level, logging.INFO)

    handlers: list[logging.Handler] = []
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(
        logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    handlers.append(stderr_handler)

    final_log_file = log_file or (os.getenv("LOG_FILE") if mode == "server" else None)
    if final_log_file:
        file_handler = logging.FileHandler(final_log_file, mode="a")
        file_handler.setFormatter(
            logging.Formatter("[%(asctime)s] [%(levelname)s] %(name)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # SQL echo and multipart parsing are noise unless debugging.
    if log_level != logging.DEBUG:
        logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
        logging.getLogger("multipart").setLevel(logging.WARNING)
        logging.getLogger("PIL").setLevel(logging.WARNING)
