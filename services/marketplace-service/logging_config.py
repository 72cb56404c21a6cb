"""Structured logging configuration.

Every record is one JSON object on stdout carrying the active trace and
span ids, so a log line can be found from its trace and the other way
around. Fields passed through ``extra`` whose names look like credentials
are masked before formatting.
"""
import logging
import sys
from typing import Optional
from pythonjsonlogger import jsonlogger
from opentelemetry import trace

from config import (
    DEPLOYMENT_ENVIRONMENT,
    LOG_LEVEL,
    OTEL_ENABLED,
    OTEL_EXPORTER_OTLP_ENDPOINT,
    SERVICE_NAME,
)

# The OpenTelemetry logs SDK is still experimental and may be missing
try:
    from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
    from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
    from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
    from opentelemetry.sdk.resources import Resource
    OTLP_LOGGING_AVAILABLE = True
except ImportError:
    OTLP_LOGGING_AVAILABLE = False

SENSITIVE_FIELDS = ("authorization", "signature", "secret", "api_token", "password")
REDACTED = "[redacted]"


class RedactingFilter(logging.Filter):
    """Mask ``extra`` fields that could carry a credential."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key in list(vars(record)):
            if any(marker in key.lower() for marker in SENSITIVE_FIELDS):
                setattr(record, key, REDACTED)
        return True


class MarketplaceJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding trace context and the service name."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        span = trace.get_current_span()
        ctx = span.get_span_context()
        if ctx.is_valid:
            log_record['trace_id'] = format(ctx.trace_id, '032x')
            log_record['span_id'] = format(ctx.span_id, '016x')

        log_record['service'] = SERVICE_NAME
        if 'message' in log_record:
            log_record['msg'] = log_record.pop('message')


def _stdout_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(MarketplaceJsonFormatter(
        '%(levelname)s %(name)s %(message)s',
        rename_fields={'levelname': 'level'}
    ))
    handler.addFilter(RedactingFilter())
    return handler


def _otlp_handler() -> Optional[logging.Handler]:
    """Handler shipping records to the collector, or None when export is off."""
    if not OTEL_ENABLED:
        return None
    if not OTLP_LOGGING_AVAILABLE:
        logging.warning("OTLP logging SDK not available - logs will only go to stdout")
        return None

    from opentelemetry._logs import set_logger_provider

    logger_provider = LoggerProvider(resource=Resource.create({
        "service.name": SERVICE_NAME,
        "deployment.environment": DEPLOYMENT_ENVIRONMENT
    }))
    logger_provider.add_log_record_processor(BatchLogRecordProcessor(
        OTLPLogExporter(endpoint=OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True)
    ))
    set_logger_provider(logger_provider)

    handler = LoggingHandler(level=logging.INFO, logger_provider=logger_provider)
    handler.addFilter(RedactingFilter())
    return handler


def setup_logging():
    """Replace the root logger's handlers with the JSON stdout handler (and OTLP export when enabled)."""
    root_logger = logging.getLogger()
    root_logger.setLevel(LOG_LEVEL)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.addHandler(_stdout_handler())

    try:
        otlp_handler = _otlp_handler()
    except Exception as e:
        logging.warning(f"Failed to configure OTLP logging handler: {e}")
    else:
        if otlp_handler is not None:
            root_logger.addHandler(otlp_handler)
            logging.info("OTLP logging handler configured")

    # Reduce noise from libraries
    for noisy in ('uvicorn.access', 'httpx', 'httpcore'):
        logging.getLogger(noisy).setLevel(logging.WARNING)
