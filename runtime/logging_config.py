import logging
import os
from typing import Optional

LOGGER_NAME = "distortion_solver"
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def setup_logging(
    log_file: Optional[str] = None,
    *,
    quiet: bool = False,
    debug: bool = False,
) -> logging.Logger:
    """Configure and return the shared `distortion_solver` logger.

    Replaces any handlers installed by a previous call. No file is written
    unless `log_file` is given.
    """
    logger = logging.getLogger(LOGGER_NAME)
    # pytest caplog hooks the root logger
    logger.propagate = True

    level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    if log_file:
        path = os.fspath(log_file)
        try:
            file_handler = logging.FileHandler(path, mode="w")
        except OSError as exc:
            print(f"[logging] Could not open log file '{path}': {exc}")
        else:
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    if not quiet:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def configure_from_parameters(
    global_params, *, quiet: bool = False
) -> Optional[logging.Logger]:
    """Apply the `log_file` / `debug` keys of a GlobalParameters.

    Returns None and leaves existing handlers alone when neither key is set,
    so embedding applications keep their own logging setup.
    """
    log_file = global_params.get("log_file")
    debug = bool(global_params.get("debug", False))
    if not log_file and not debug:
        return None
    logger = setup_logging(log_file, quiet=quiet, debug=debug)
    logger.debug(
        "Logging configured: file=%s, debug=%s, quiet=%s.", log_file, debug, quiet
    )
    return logger
