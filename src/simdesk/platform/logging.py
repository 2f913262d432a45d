"""
Simple structured logging setup using structlog directly.

No wrappers, just standard structlog configuration.
"""

import logging

import structlog

from simdesk.platform.settings import Settings, settings


def setup_logging(config: Settings | None = None) -> None:
    """
    Setup structured logging with structlog.

    Uses settings from centralized configuration.
    """
    config = config or settings

    logging.basicConfig(format="%(message)s", level=config.observability.log_level.value)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if config.observability.enable_correlation_ids:
        processors.insert(
            0,
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.THREAD_NAME]
            ),
        )

    # Use JSON or console output based on settings
    if config.observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_audit_logger() -> structlog.stdlib.BoundLogger:
    """Logger for financial audit events (credit notes issued, rates changed)."""
    return structlog.get_logger("audit")


def log_audit_event(
    action: str,
    category: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    company_id: int | None = None,
    **kwargs,
) -> None:
    """Log an audit event as a structured log entry."""
    audit_logger = get_audit_logger()

    audit_logger.info(
        action,
        audit_category=category,
        audit_resource_type=resource_type,
        audit_resource_id=resource_id,
        audit_company_id=company_id,
        **kwargs,
    )
