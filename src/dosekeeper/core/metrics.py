"""OpenTelemetry metrics for the dose timeline caches and intake writes.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter around.  Until ``init_metrics`` installs a real
provider every recording is a silent no-op.

Instruments
-----------
Month cache:

  dosekeeper.month_cache.fetch_total        Counter (label: outcome=ok|error|discarded)
      Completed month fetches.  ``discarded`` means an invalidation raced the
      fetch and its result was thrown away.

  dosekeeper.month_cache.hit_total          Counter
      ``ensure_month`` calls served from memory.

  dosekeeper.month_cache.fetch_duration_ms  Histogram
      Wall time of one month fetch.

Week cache:

  dosekeeper.week_cache.days_computed_total Counter
      Day summaries computed (cache misses).

Intake:

  dosekeeper.intake.pending_writes          UpDownCounter (gauge semantics)
      Intake logs accepted but not yet persisted.

  dosekeeper.intake.write_failures_total    Counter
      Intake writes that exhausted their retries.

  dosekeeper.intake.divergence_total        Counter
      Optimistic intake updates rolled back after a fresh fetch.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "dosekeeper"

# ---------------------------------------------------------------------------
# MeterProvider initialization
# ---------------------------------------------------------------------------


def init_metrics(service_name: str = "dosekeeper") -> metrics.Meter:
    """Install a MeterProvider with an OTLP gRPC exporter when configured.

    When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the global no-op provider
    stays in place.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # SDK/exporter imported only when an endpoint is configured
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=endpoint), export_interval_millis=15_000
    )
    metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    return metrics.get_meter(_METER_NAME)


# ---------------------------------------------------------------------------
# Instrument factories
# ---------------------------------------------------------------------------


def _month_fetch_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="dosekeeper.month_cache.fetch_total",
        description="Completed month cache fetches by outcome",
        unit="fetches",
    )


def _month_hit_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="dosekeeper.month_cache.hit_total",
        description="Month lookups served from memory",
        unit="lookups",
    )


def _month_fetch_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="dosekeeper.month_cache.fetch_duration_ms",
        description="Wall time of one month fetch",
        unit="ms",
    )


def _week_days_computed_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="dosekeeper.week_cache.days_computed_total",
        description="Day summaries computed on cache miss",
        unit="days",
    )


def _intake_pending_writes() -> metrics.UpDownCounter:
    return get_meter().create_up_down_counter(
        name="dosekeeper.intake.pending_writes",
        description="Intake logs accepted but not yet persisted",
        unit="writes",
    )


def _intake_write_failures_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="dosekeeper.intake.write_failures_total",
        description="Intake writes that exhausted their retries",
        unit="writes",
    )


def _intake_divergence_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="dosekeeper.intake.divergence_total",
        description="Optimistic intake updates rolled back after a fresh fetch",
        unit="writes",
    )


# ---------------------------------------------------------------------------
# DoseKeeperMetrics
# ---------------------------------------------------------------------------


class DoseKeeperMetrics:
    """Convenience wrapper around the timeline instruments.

    Safe to construct before ``init_metrics``; instruments are created on
    first use.  Every recording carries a ``profile`` label when one is given.
    """

    def __init__(self, profile_id: str | None = None) -> None:
        self._attrs: dict[str, str] = {"profile": profile_id} if profile_id else {}

        self.__fetch_total: metrics.Counter | None = None
        self.__hit_total: metrics.Counter | None = None
        self.__fetch_duration: metrics.Histogram | None = None
        self.__days_computed: metrics.Counter | None = None
        self.__pending_writes: metrics.UpDownCounter | None = None
        self.__write_failures: metrics.Counter | None = None
        self.__divergence: metrics.Counter | None = None

    # -- instrument accessors (lazy init) ------------------------------------

    @property
    def _fetch_total(self) -> metrics.Counter:
        if self.__fetch_total is None:
            self.__fetch_total = _month_fetch_total()
        return self.__fetch_total

    @property
    def _hit_total(self) -> metrics.Counter:
        if self.__hit_total is None:
            self.__hit_total = _month_hit_total()
        return self.__hit_total

    @property
    def _fetch_duration(self) -> metrics.Histogram:
        if self.__fetch_duration is None:
            self.__fetch_duration = _month_fetch_duration_ms()
        return self.__fetch_duration

    @property
    def _days_computed(self) -> metrics.Counter:
        if self.__days_computed is None:
            self.__days_computed = _week_days_computed_total()
        return self.__days_computed

    @property
    def _pending_writes(self) -> metrics.UpDownCounter:
        if self.__pending_writes is None:
            self.__pending_writes = _intake_pending_writes()
        return self.__pending_writes

    @property
    def _write_failures(self) -> metrics.Counter:
        if self.__write_failures is None:
            self.__write_failures = _intake_write_failures_total()
        return self.__write_failures

    @property
    def _divergence(self) -> metrics.Counter:
        if self.__divergence is None:
            self.__divergence = _intake_divergence_total()
        return self.__divergence

    # -- month cache ---------------------------------------------------------

    def month_fetch(self, outcome: str, duration_ms: float) -> None:
        """Record one finished month fetch (``ok``, ``error`` or ``discarded``)."""
        self._fetch_total.add(1, {**self._attrs, "outcome": outcome})
        self._fetch_duration.record(duration_ms, self._attrs)

    def month_hit(self) -> None:
        self._hit_total.add(1, self._attrs)

    # -- week cache ----------------------------------------------------------

    def week_day_computed(self) -> None:
        self._days_computed.add(1, self._attrs)

    # -- intake --------------------------------------------------------------

    def intake_pending_inc(self) -> None:
        self._pending_writes.add(1, self._attrs)

    def intake_pending_dec(self) -> None:
        self._pending_writes.add(-1, self._attrs)

    def intake_write_failed(self) -> None:
        self._write_failures.add(1, self._attrs)

    def intake_divergence(self) -> None:
        self._divergence.add(1, self._attrs)
