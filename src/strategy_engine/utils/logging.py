"""Structured logging setup.

Uses structlog on top of the stdlib logging module, with either JSON or
colored console output.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

from strategy_engine.config import LogFormat, Settings, get_settings


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        settings: Settings to read level/format from. Defaults to the
            process settings.
    """
    settings = settings or get_settings()

    log_level = getattr(logging, settings.log_level)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == LogFormat.JSON:
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structured logger.

    Args:
        name: Logger name. Defaults to the calling module.

    Returns:
        Bound structlog logger.
    """
    return structlog.get_logger(name)


def log_trade_instruction(
    logger: structlog.stdlib.BoundLogger,
    *,
    strategy_id: str,
    direction: str,
    input_token: str,
    output_token: str,
    amount: float,
    **kwargs: Any,
) -> None:
    """Record a trade instruction produced by a strategy match."""
    logger.info(
        "trade_instruction",
        strategy_id=strategy_id,
        direction=direction,
        input_token=input_token,
        output_token=output_token,
        amount=amount,
        **kwargs,
    )


def log_swap_execution(
    logger: structlog.stdlib.BoundLogger,
    *,
    trade_id: str,
    status: str,
    signature: str | None = None,
    latency_ms: float | None = None,
    **kwargs: Any,
) -> None:
    """Record the outcome of one swap attempt."""
    level = "info" if status == "CONFIRMED" else "warning"
    getattr(logger, level)(
        "swap_execution",
        trade_id=trade_id,
        status=status,
        signature=signature,
        latency_ms=round(latency_ms, 2) if latency_ms is not None else None,
        **kwargs,
    )


def log_risk_event(
    logger: structlog.stdlib.BoundLogger,
    *,
    event_type: str,
    action: str,
    **kwargs: Any,
) -> None:
    """Record a risk control block."""
    logger.warning(
        "risk_event",
        event_type=event_type,
        action=action,
        **kwargs,
    )
