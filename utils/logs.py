import logging

import structlog


def configure_logging(level: str = "INFO"):
    """Configures structlog for JSON logging with ISO timestamps."""
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )


def mask_ip(ip):
    # Operational logs only carry the network part of an address
    if not ip:
        return None
    parts = ip.split(".")
    if len(parts) == 4:
        return f"{parts[0]}.{parts[1]}.{parts[2]}.xxx"
    if ":" in ip:
        return ":".join(ip.split(":")[:4]) + "::xxxx"
    return "masked"
