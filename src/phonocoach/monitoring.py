"""Monitoring configuration for the practice engine."""
from prometheus_client import Counter, Histogram, start_http_server

# Practice metrics
submissions = Counter(
    "phonocoach_submissions_total",
    "Total number of diagnosed attempts",
    ["mode", "action"],
)

replayed_submissions = Counter(
    "phonocoach_replayed_submissions_total",
    "Total number of submissions answered from an earlier idempotency key",
)

busy_rejections = Counter(
    "phonocoach_busy_rejections_total",
    "Total number of submissions rejected while another was in flight",
)

calibrations_completed = Counter(
    "phonocoach_calibrations_completed_total",
    "Total number of learners that finished calibration",
    ["suggested_level"],
)

generated_words = Counter(
    "phonocoach_generated_words_total",
    "Total number of practice words obtained by generation",
    ["language"],
)

# Upstream metrics
upstream_requests = Counter(
    "phonocoach_upstream_requests_total",
    "Total number of speech backend calls",
    ["operation", "outcome"],
)

upstream_retries = Counter(
    "phonocoach_upstream_retries_total",
    "Total number of retried speech backend attempts",
    ["operation"],
)

upstream_duration = Histogram(
    "phonocoach_upstream_duration_seconds",
    "Duration of speech backend calls in seconds",
    ["operation"],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0],
)

# Error metrics
error_count = Counter(
    "phonocoach_errors_total",
    "Total number of errors encountered",
    ["error_type"],
)


def start_monitoring(port: int = 9090) -> None:
    """Start the Prometheus metrics server."""
    start_http_server(port)
