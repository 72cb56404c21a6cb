"""Monitoring and observability setup.

Tracing and metrics are exported over OTLP/gRPC when OTEL_ENABLED is set.
When it is not, the OpenTelemetry API falls back to its no-op providers,
so instruments below can be used unconditionally.

Exemplars are attached automatically to the histograms (external call
duration, withdrawal amount) when they are recorded inside an active
trace, which links a slow gateway call straight to its trace.
"""
import logging
from opentelemetry import trace, metrics
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
import pyroscope

from config import (
    API_VERSION,
    DEPLOYMENT_ENVIRONMENT,
    OTEL_ENABLED,
    OTEL_EXPORTER_OTLP_ENDPOINT,
    PROFILING_ENABLED,
    PYROSCOPE_SERVER,
    SERVICE_NAME,
)

logger = logging.getLogger(__name__)

METRIC_EXPORT_INTERVAL_MS = 15000


def _resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": API_VERSION,
        "deployment.environment": DEPLOYMENT_ENVIRONMENT,
    })


def init_tracing() -> trace.Tracer:
    """Install the OTLP span exporter when enabled and return the module tracer."""
    if OTEL_ENABLED:
        tracer_provider = TracerProvider(resource=_resource())
        tracer_provider.add_span_processor(BatchSpanProcessor(
            OTLPSpanExporter(endpoint=OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True)
        ))
        trace.set_tracer_provider(tracer_provider)
        logger.info("Tracing initialized", extra={"endpoint": OTEL_EXPORTER_OTLP_ENDPOINT})

    return trace.get_tracer(__name__)


def init_metrics() -> metrics.Meter:
    """Install the periodic OTLP metric reader when enabled and return the meter."""
    if OTEL_ENABLED:
        reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=OTEL_EXPORTER_OTLP_ENDPOINT, insecure=True),
            export_interval_millis=METRIC_EXPORT_INTERVAL_MS
        )
        metrics.set_meter_provider(MeterProvider(resource=_resource(), metric_readers=[reader]))
        logger.info("Metrics initialized", extra={"endpoint": OTEL_EXPORTER_OTLP_ENDPOINT})

    return metrics.get_meter(SERVICE_NAME)


def init_profiling() -> None:
    """Start continuous profiling; a missing profiler server never blocks startup."""
    if not PROFILING_ENABLED:
        return
    try:
        pyroscope.configure(
            application_name=SERVICE_NAME,
            server_address=PYROSCOPE_SERVER,
            tags={"env": DEPLOYMENT_ENVIRONMENT, "version": API_VERSION}
        )
        logger.info("Profiling initialized", extra={"server": PYROSCOPE_SERVER})
    except Exception as e:
        logger.warning(f"Failed to initialize profiling: {e}")


tracer = init_tracing()
meter = init_metrics()

# Order ledger metrics
orders_created_counter = meter.create_counter(
    "marketplace.orders.created",
    description="Total number of orders created",
    unit="1"
)

orders_rejected_counter = meter.create_counter(
    "marketplace.orders.rejected",
    description="Order creations rejected for quantity or availability",
    unit="1"
)

order_status_changes_counter = meter.create_counter(
    "marketplace.orders.status_changes",
    description="Order status transitions by target status",
    unit="1"
)

# Payment metrics
payments_initiated_counter = meter.create_counter(
    "marketplace.payments.initiated",
    description="Payment attempts created, by provider type",
    unit="1"
)

payments_completed_counter = meter.create_counter(
    "marketplace.payments.completed",
    description="Payment attempts transitioned to COMPLETED, by channel",
    unit="1"
)

webhooks_received_counter = meter.create_counter(
    "marketplace.webhooks.received",
    description="Card gateway webhook deliveries, by event type and outcome",
    unit="1"
)

webhooks_rejected_counter = meter.create_counter(
    "marketplace.webhooks.rejected",
    description="Card gateway webhook deliveries rejected for bad signature",
    unit="1"
)

external_duration_histogram = meter.create_histogram(
    "marketplace.external.duration",
    description="Duration of card gateway and chain indexer calls",
    unit="s"
)
# Exemplars: Automatically links slow provider calls to their traces

# Earnings metrics
earnings_credited_counter = meter.create_counter(
    "marketplace.earnings.credited",
    description="Earning records credited to farmers",
    unit="1"
)

withdrawals_counter = meter.create_counter(
    "marketplace.withdrawals",
    description="Withdrawal requests, by outcome",
    unit="1"
)

withdrawal_amount_histogram = meter.create_histogram(
    "marketplace.withdrawals.amount",
    description="Withdrawn amount per successful withdrawal",
    unit="NGN"
)

# Security monitoring metrics
auth_failures_counter = meter.create_counter(
    "marketplace.auth.failures",
    description="Total number of authentication failures",
    unit="1"
)

auth_attempts_counter = meter.create_counter(
    "marketplace.auth.attempts",
    description="Total number of authentication attempts",
    unit="1"
)

rate_limit_exceeded_counter = meter.create_counter(
    "marketplace.rate_limit.exceeded",
    description="Total number of rate limit violations",
    unit="1"
)
