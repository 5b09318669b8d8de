"""
Prometheus metrics collection and monitoring
"""
from prometheus_client import Counter, Histogram, Info, CollectorRegistry, generate_latest

from emergency_dispatch.core.logging import SERVICE_NAME, SERVICE_VERSION

# Create a custom registry for the application
REGISTRY = CollectorRegistry()

# Application Info
app_info = Info('dispatch_app', 'Application information', registry=REGISTRY)
app_info.info({
    'version': SERVICE_VERSION,
    'name': SERVICE_NAME
})

# HTTP Request Metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=REGISTRY
)

# Business Metrics
emergency_requests_total = Counter(
    'emergency_requests_total',
    'Total emergency requests submitted',
    ['service_type'],
    registry=REGISTRY
)

dispatch_attempts_total = Counter(
    'dispatch_attempts_total',
    'Dispatch attempts by outcome',
    ['service_type', 'reason'],
    registry=REGISTRY
)

dispatch_assignment_time = Histogram(
    'dispatch_assignment_time_seconds',
    'Time from request submission to responder assignment',
    ['service_type'],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600],  # 1s to 10min
    registry=REGISTRY
)

request_status_changes_total = Counter(
    'request_status_changes_total',
    'Request status changes',
    ['service_type', 'status'],
    registry=REGISTRY
)

responder_releases_total = Counter(
    'responder_releases_total',
    'Accepted requests handed back to pending',
    ['service_type', 'cause'],
    registry=REGISTRY
)


class MetricsCollector:
    """Centralized metrics collection service"""

    def __init__(self):
        self.registry = REGISTRY

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics"""
        http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        http_request_duration_seconds.labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_request_submitted(self, service_type: str):
        emergency_requests_total.labels(service_type=service_type).inc()

    def record_dispatch(self, service_type: str, reason: str):
        """Record the outcome of one dispatch attempt"""
        dispatch_attempts_total.labels(
            service_type=service_type,
            reason=reason
        ).inc()

    def record_assignment_time(self, service_type: str, seconds: float):
        dispatch_assignment_time.labels(service_type=service_type).observe(max(seconds, 0.0))

    def record_status_change(self, service_type: str, status: str):
        request_status_changes_total.labels(
            service_type=service_type,
            status=status
        ).inc()

    def record_release(self, service_type: str, cause: str):
        """Record a decline (cause=declined) or an unanswered offer (cause=expired)"""
        responder_releases_total.labels(
            service_type=service_type,
            cause=cause
        ).inc()

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format"""
        return generate_latest(self.registry)


# Global metrics collector instance
metrics_collector = MetricsCollector()
