"""Prometheus metrics for health checks and daemon restarts."""

from prometheus_client import Counter, Gauge

HEALTH_CHECK_PASSED = Gauge(
    "pxe_health_check_passed",
    "1 if the health check passed on the last run, 0 otherwise",
    ["check"],
)

HEALTH_CHECK_DURATION = Gauge(
    "pxe_health_check_duration_seconds",
    "Duration of the health check on the last run",
    ["check"],
)

HEALTH_CHECK_FAILURES = Gauge(
    "pxe_health_check_failures",
    "Number of failing health checks on the last run",
)

HEALTH_RUNS = Counter(
    "pxe_health_runs_total",
    "Health monitoring passes by overall outcome",
    ["outcome"],
)

DAEMON_RESTARTS = Counter(
    "pxe_daemon_restarts_total",
    "Automatic daemon restarts after persistent health check failures",
    ["service"],
)
