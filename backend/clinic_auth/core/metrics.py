"""Prometheus metrics"""

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNT = Counter(
    "clinic_auth_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "clinic_auth_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
LOGIN_ATTEMPTS = Counter(
    "clinic_auth_login_attempts_total",
    "Login attempts by outcome",
    ["outcome"],
)
TOKEN_REFRESHES = Counter(
    "clinic_auth_token_refresh_total",
    "Refresh token presentations by outcome",
    ["outcome"],
)
RATE_LIMIT_REJECTIONS = Counter(
    "clinic_auth_rate_limit_rejections_total",
    "Requests rejected by the general rate limiter",
    ["state"],
)
CLEANUP_RUNS = Counter(
    "clinic_auth_cleanup_runs_total",
    "Background cleanup task runs",
    ["task", "result"],
)
CLEANUP_WORKER_UP = Gauge("clinic_auth_cleanup_worker_up", "Cleanup worker liveness (1 running, 0 stopped)")
