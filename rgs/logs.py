import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Attach a console handler to the ``rgs`` logger tree once."""
    root = logging.getLogger("rgs")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if not any(getattr(h, "_rgs_console", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._rgs_console = True
        root.addHandler(handler)
    # werkzeug request lines are noisy at INFO
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    return root
