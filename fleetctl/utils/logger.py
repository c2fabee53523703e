"""
Logging setup shared by every fleetctl module.

structlog renders on top of the standard library handlers so that third
party libraries (uvicorn, botocore) end up in the same stream.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

from fleetctl.config.system_configs import LoggingConfig

_configured = False


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure structlog and the root logger from LoggingConfig"""
    global _configured
    config = config or LoggingConfig()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if config.enable_structured:
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_fleetctl", False):
            root.removeHandler(handler)

    handlers = []
    if config.enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))

    if config.log_dir:
        log_dir = Path(config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_dir / "fleetctl.log",
                maxBytes=config.max_file_size,
                backupCount=config.backup_count,
                encoding="utf-8",
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
        handler._fleetctl = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    root.setLevel(config.log_level.upper())

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: Optional[str] = None) -> Any:
    """Get a structlog logger, configuring defaults on first use"""
    if not _configured:
        setup_logging()
    return structlog.get_logger(name or "fleetctl")
