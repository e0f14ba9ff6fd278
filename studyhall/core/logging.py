"""The logging configuration module."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

# Attributes every LogRecord carries; anything else on a record came in through `extra`.
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "custom_dimensions",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Every record becomes one JSON object with the context dimensions of the
    logger that emitted it under ``custom_dimensions``, so log queries can filter
    on ``user_id``, ``request_id`` or ``stripe_event_id``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON.

        Args:
        ----
            record (logging.LogRecord): The log record to format

        Returns:
        -------
            str: JSON-formatted log message

        """
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        dimensions = getattr(record, "custom_dimensions", None)
        if dimensions:
            log_entry["custom_dimensions"] = dimensions

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_ATTRS:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class ContextualLogger(logging.LoggerAdapter):
    """A LoggerAdapter that carries context dimensions and an optional message prefix."""

    def __init__(
        self,
        logger: logging.Logger,
        prefix: str = "",
        dimensions: Optional[dict] = None,
    ) -> None:
        """Initialize the contextual logger.

        Args:
        ----
            logger (logging.Logger): Base logger instance
            prefix (str): Optional prefix for log messages
            dimensions (Optional[dict]): Custom dimensions for structured logging

        """
        super().__init__(logger, {})
        self.prefix = prefix
        self.dimensions = dimensions or {}

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        """Prefix the message and merge the dimensions into the record's extras."""
        if self.prefix:
            msg = f"{self.prefix}{msg}"

        extra = kwargs.setdefault("extra", {})
        if self.dimensions:
            extra["custom_dimensions"] = {
                **extra.get("custom_dimensions", {}),
                **self.dimensions,
            }

        return msg, kwargs

    def with_prefix(self, prefix: str) -> "ContextualLogger":
        """Create a new logger with another prefix and the same dimensions.

        Args:
        ----
            prefix (str): The prefix to add

        Returns:
        -------
            ContextualLogger: New logger instance with updated prefix

        """
        return ContextualLogger(self.logger, prefix, self.dimensions)

    def with_context(self, **dimensions: str | int | float | bool | None) -> "ContextualLogger":
        """Create a new logger with additional context dimensions.

        Dimensions whose value is None are dropped so optional identifiers
        (a user without a subscription yet) do not show up as nulls.

        Args:
        ----
            dimensions: Keyword arguments to add to dimensions

        Returns:
        -------
            ContextualLogger: New logger instance with updated dimensions

        """
        new_dimensions = {
            **self.dimensions,
            **{key: value for key, value in dimensions.items() if value is not None},
        }
        return ContextualLogger(self.logger, self.prefix, new_dimensions)


class LoggerConfigurator:
    """Configures loggers with support for dimensions and prefixes.

    The base context is injected at the dependency level: API requests get
    ``context_base="api"`` with the request id and the signed-in user, webhook
    deliveries get ``auth_method="stripe_webhook"`` with the event id and type.
    Services then add their own dimensions (operation, subscription id, tier).

    Configuration:
    -------------
    Uses settings from studyhall.core.config:
    - Text format when LOCAL_DEVELOPMENT=True, JSON format otherwise
    - LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Examples:
    --------
    ```python
    logger = LoggerConfigurator.configure_logger(
        __name__, dimensions={"component": "transition_engine"}
    )
    logger.with_context(user_id="user_123", desired_tier="lessons_ai").info("Upgrading")
    ```

    """

    @staticmethod
    def configure_logger(
        name: str,
        prefix: str = "",
        dimensions: Optional[dict] = None,
    ) -> ContextualLogger:
        """Configure and return a logger with the given name and initial context.

        Args:
        ----
            name (str): Logger name (typically __name__)
            prefix (str): Initial prefix for log messages
            dimensions (Optional[dict]): Initial custom dimensions

        Returns:
        -------
            ContextualLogger: Configured logger with context support

        """
        logger = logging.getLogger(name)

        # Import settings here to avoid circular imports
        from studyhall.core.config import settings

        logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
        logger.propagate = False

        if getattr(logger, "_studyhall_configured", False):
            return ContextualLogger(logger, prefix, dimensions)

        logger.handlers.clear()
        stream_handler = logging.StreamHandler(sys.stdout)

        if settings.LOCAL_DEVELOPMENT:
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        else:
            formatter = JSONFormatter()

        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
        logger._studyhall_configured = True

        return ContextualLogger(logger, prefix, dimensions)


# Default logger instance
logger = LoggerConfigurator.configure_logger("studyhall")
