"""
Prometheus metrics for the request security layer.
"""

from typing import Any, Dict, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Histogram, Info

# name -> (type, help text, label names)
METRIC_DEFINITIONS: Dict[str, Tuple[type, str, Tuple[str, ...]]] = {
    "http_requests_total": (Counter, "Total HTTP requests", ("method", "endpoint", "status_code")),
    "http_request_duration_seconds": (Histogram, "HTTP request duration in seconds", ("method", "endpoint")),
    "health_check_total": (Counter, "Total health check requests", ("status",)),
    "errors_total": (Counter, "Security layer errors by code", ("error_type", "service")),
    "security_violations_total": (Counter, "Recorded security violations", ("type", "severity")),
    "rate_limit_decisions_total": (Counter, "Rate limiter admission decisions", ("decision",)),
    "csrf_validations_total": (Counter, "CSRF token validations by outcome", ("outcome",)),
    "sanitizer_findings_total": (Counter, "Sanitizer hard findings by category", ("category",)),
    "gateway_call_duration_seconds": (Histogram, "Secure gateway upstream call duration", ("method", "outcome")),
}


class MetricsCollector:
    """Holds one registry worth of security layer metrics.

    Each collector owns its registry unless one is passed in, so several
    services (or tests) in one process never collide on metric names.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {
            name: metric_type(name, description, labels, registry=self.registry)
            for name, (metric_type, description, labels) in METRIC_DEFINITIONS.items()
        }

        info = Info("service", "Service information", registry=self.registry)
        info.info({"service": service_name, "version": "1.0.0"})

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        self._metrics["http_requests_total"].labels(
            method=method, endpoint=endpoint, status_code=str(status_code)
        ).inc()
        self._metrics["http_request_duration_seconds"].labels(method=method, endpoint=endpoint).observe(duration)

    def record_health_check(self, status: str):
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        self._metrics["errors_total"].labels(error_type=error_type, service=service or self.service_name).inc()

    def record_violation(self, violation_type: str, severity: str):
        self._metrics["security_violations_total"].labels(type=violation_type, severity=severity).inc()

    def record_rate_limit(self, allowed: bool):
        self._metrics["rate_limit_decisions_total"].labels(decision="allowed" if allowed else "denied").inc()

    def record_csrf_validation(self, outcome: str):
        self._metrics["csrf_validations_total"].labels(outcome=outcome).inc()

    def record_sanitizer_finding(self, category: str, occurrences: int = 1):
        self._metrics["sanitizer_findings_total"].labels(category=category).inc(occurrences)

    def record_gateway_call(self, method: str, outcome: str, duration: float):
        self._metrics["gateway_call_duration_seconds"].labels(method=method, outcome=outcome).observe(duration)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
