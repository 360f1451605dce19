"""
Logging setup — console plus server.log inside LOG_DIR.
"""
import logging
import os

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(log_dir: str, level: str = "INFO") -> None:
    """Attach console and file handlers to the root logger (idempotent)."""
    root = logging.getLogger()
    root.setLevel(level.upper())

    if any(getattr(h, "_tms_handler", False) for h in root.handlers):
        return

    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console._tms_handler = True
    root.addHandler(console)

    os.makedirs(log_dir, exist_ok=True)
    file_handler = logging.FileHandler(os.path.join(log_dir, "server.log"))
    file_handler.setFormatter(formatter)
    file_handler._tms_handler = True
    root.addHandler(file_handler)
