import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from brokerprobe.contracts.health import HealthTransition
from brokerprobe.contracts.probe_result import ProbeResult

logger = logging.getLogger(__name__)


class ProberMetrics:
    """
    Prometheus metrics for the liveness prober.

    Metrics live on their own CollectorRegistry unless one is passed in, so
    several probers (and tests) can coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.PROBES = Counter(
            "broker_probes",
            "Probe attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.PROBE_LATENCY = Histogram(
            "broker_probe_latency_seconds",
            "Probe round-trip latency in seconds",
            registry=self.registry,
        )
        self.OVERRUNS = Counter(
            "broker_probe_overruns",
            "Probe ticks skipped because the previous probe was still in flight",
            registry=self.registry,
        )
        self.TRANSITIONS = Counter(
            "broker_health_transitions",
            "Connection health transitions by target state",
            ["state"],
            registry=self.registry,
        )
        self.CONNECTIONS = Gauge(
            "broker_probed_connections",
            "Connections currently registered with the prober",
            registry=self.registry,
        )

    def record_probe(self, result: ProbeResult):
        outcome = "success" if result.succeeded else result.error.value
        self.PROBES.labels(outcome=outcome).inc()
        self.PROBE_LATENCY.observe(result.latency)

    def record_overrun(self):
        self.OVERRUNS.inc()

    def record_transition(self, transition: HealthTransition):
        self.TRANSITIONS.labels(state=transition.current.value).inc()

    def set_connections(self, count: int):
        self.CONNECTIONS.set(count)

    def exposition(self) -> bytes:
        return generate_latest(self.registry)
