"""
Structured Logging
==================

structlog configuration shared by every run. Events from structlog loggers
and from plain ``logging.getLogger(__name__)`` module loggers go through the
same processor chain, so pipeline.log holds one JSON object per line.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional, Union

import structlog

_MAX_BYTES = 10_485_760

_handlers: List[logging.Handler] = []
_log_dir: Optional[Path] = None

# Applied to every event before rendering, whichever logger produced it
_SHARED_PROCESSORS = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.CallsiteParameterAdder(
        parameters=[
            structlog.processors.CallsiteParameter.FILENAME,
            structlog.processors.CallsiteParameter.LINENO,
        ]
    ),
]


class LogManager:
    """
    Process-wide logging configuration.

    ``setup`` attaches rotating JSON log files and a console handler to the
    root logger; ``get_logger`` hands out structlog loggers bound to a
    component and run id.
    """

    @staticmethod
    def _formatter(log_format: str) -> structlog.stdlib.ProcessorFormatter:
        if log_format == "console":
            renderers = [structlog.dev.ConsoleRenderer(colors=False)]
        else:
            renderers = [
                structlog.processors.dict_tracebacks,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.JSONRenderer(),
            ]
        return structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_SHARED_PROCESSORS,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
        )

    @staticmethod
    def setup(log_level: str = "INFO",
              log_dir: Optional[Union[str, Path]] = None,
              log_format: str = "json") -> Path:
        """
        Initialize logging once per process.

        Files written to ``log_dir`` (./logs by default), both JSON lines:
        - pipeline.log: every event at ``log_level`` and above, 10 MB x 5
        - errors.log: ERROR and above, 10 MB x 3

        Console output on stderr is rendered as ``json`` or, with
        ``console``, as aligned human-readable lines.

        Returns:
            The directory in use. Later calls return it unchanged until
            ``shutdown`` is called.
        """
        global _log_dir

        if _log_dir is not None:
            return _log_dir

        log_path = Path(log_dir) if log_dir else Path.cwd() / "logs"
        log_path.mkdir(parents=True, exist_ok=True)
        level = getattr(logging, log_level.upper(), logging.INFO)
        file_formatter = LogManager._formatter("json")

        main_handler = RotatingFileHandler(log_path / "pipeline.log", maxBytes=_MAX_BYTES, backupCount=5)
        main_handler.setLevel(level)
        main_handler.setFormatter(file_formatter)

        error_handler = RotatingFileHandler(log_path / "errors.log", maxBytes=_MAX_BYTES, backupCount=3)
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(file_formatter)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(LogManager._formatter(log_format))

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        for handler in (main_handler, error_handler, console_handler):
            root_logger.addHandler(handler)
            _handlers.append(handler)

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                *_SHARED_PROCESSORS,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        _log_dir = log_path
        structlog.get_logger(__name__).info("logging_initialized", log_dir=str(log_path), level=log_level)
        return log_path

    @staticmethod
    def shutdown():
        """Detach and close the handlers added by ``setup``; the next ``setup`` starts fresh."""
        global _log_dir

        root_logger = logging.getLogger()
        for handler in _handlers:
            root_logger.removeHandler(handler)
            handler.close()
        _handlers.clear()
        _log_dir = None

    @staticmethod
    def get_logger(component: str, run_id: str):
        """
        Return a structlog logger bound with component and run_id context.

        Calls LogManager.setup() with defaults if logging is not initialized.
        """
        if _log_dir is None:
            LogManager.setup()

        return structlog.get_logger(component).bind(component=component, run_id=run_id)
