import logging

from app import config


def setup_logging(level: str = None) -> None:
    """Configure root logging once for the API process and sync workers."""
    root = logging.getLogger()
    if any(getattr(h, "_mail_sync", False) for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    handler._mail_sync = True

    root.addHandler(handler)
    root.setLevel((level or config.LOG_LEVEL).upper())

    # googleapiclient logs every discovery cache miss at WARNING
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
