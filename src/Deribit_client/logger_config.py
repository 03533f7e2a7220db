import structlog
import logging
import sys

# Keys whose values must never reach a log sink.
SENSITIVE_KEYS = ("client_secret", "access_token", "refresh_token", "password")
MASK = "***"


class BaseLogger:
    """
    A base class that provides a structlog logger instance bound with the class name.
    Subclasses can inherit from this to get a pre-configured logger.
    """

    def __init__(self):
        """Initializes the logger and binds the class name."""
        self.log = structlog.get_logger().bind(class_name=self.__class__.__name__)


def mask_secrets(value):
    """Returns a copy of ``value`` with sensitive mapping entries replaced by a mask."""
    if isinstance(value, dict):
        return {
            key: MASK if key in SENSITIVE_KEYS and item is not None else mask_secrets(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(mask_secrets(item) for item in value)
    return value


def mask_sensitive_fields(_, __, event_dict):
    """structlog processor applying :func:`mask_secrets` to every event."""
    return mask_secrets(event_dict)


def configure_logging(log_level=logging.INFO):
    """
    Configures structlog and standard Python logging for the application.

    Sets up processors for context variable merging, log level, ISO
    timestamps, exception formatting and colored console output. Every event
    passes through :func:`mask_sensitive_fields` before it is rendered, so
    credentials and tokens are never written out.

    Args:
        log_level (int, optional): The minimum logging level to output
                                   (e.g., logging.DEBUG, logging.INFO).
                                   Defaults to logging.INFO.
    """
    if not isinstance(log_level, int):
        print(
            f"Warning: Invalid log level type: {type(log_level)}. Defaulting to INFO."
        )
        log_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            mask_sensitive_fields,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=True),
        foreign_pre_chain=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False),
        ],
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()

    # Clear existing handlers to prevent duplicate logs if called more than once
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    root_logger.addHandler(console_handler)
    root_logger.setLevel(log_level)

    initial_log = structlog.get_logger("LoggerConfiguration")
    initial_log.info(
        "Logging configured successfully",
        configured_level=logging.getLevelName(log_level),
    )
