"""
Structured logging for the proxy service

Human-readable lines on stdout, JSON lines in the log directory. Transport
noise from client disconnects is filtered at the handlers so it never
reaches either output.
"""

import structlog
from pathlib import Path
import logging.config

from trafficlens.proxy.noise import TRANSPORT_LOGGERS, install_noise_filter

LOG_FILE = "trafficlens.log"
ERROR_LOG_FILE = "errors.log"
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Applied to stdlib records (mitmproxy, uvicorn) before rendering
SHARED_PROCESSORS = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]


def _formatter(renderer) -> dict:
    return {
        "()": structlog.stdlib.ProcessorFormatter,
        "processor": renderer,
        "foreign_pre_chain": SHARED_PROCESSORS,
    }


def _log_file_handler(path: Path, level: str) -> dict:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "level": level,
        "formatter": "json",
        "filters": ["transport_noise"],
        "filename": str(path),
        "maxBytes": LOG_FILE_MAX_BYTES,
        "backupCount": LOG_FILE_BACKUPS,
    }


def configure_logging(log_level: str = "INFO", log_dir: str = "logs"):
    """Route structlog and stdlib logging through shared handlers"""
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "transport_noise": {"()": "trafficlens.proxy.noise.TransportNoiseFilter"},
        },
        "formatters": {
            "console": _formatter(structlog.dev.ConsoleRenderer(colors=False)),
            "json": _formatter(structlog.processors.JSONRenderer()),
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "console",
                "filters": ["transport_noise"],
                "stream": "ext://sys.stdout",
            },
            "file": _log_file_handler(log_path / LOG_FILE, log_level),
            "error_file": _log_file_handler(log_path / ERROR_LOG_FILE, "ERROR"),
        },
        "loggers": {
            "": {
                "handlers": ["console", "file", "error_file"],
                "level": log_level,
            },
            # mitmproxy logs every client connect/disconnect at INFO
            "mitmproxy": {"level": "WARNING"},
        },
    })

    install_noise_filter(TRANSPORT_LOGGERS)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *SHARED_PROCESSORS,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
