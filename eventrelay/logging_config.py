"""Process-wide logging setup."""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if any(getattr(h, "_eventrelay", False) for h in root.handlers):
        root.setLevel(level.upper())
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._eventrelay = True
    root.addHandler(handler)
    root.setLevel(level.upper())
    # httpx logs every request at INFO, which would echo webhook URLs per attempt
    logging.getLogger("httpx").setLevel(logging.WARNING)
