from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

PROXY_REQUESTS = Counter(
    "meshgate_proxy_requests_total",
    "Total proxied requests and tunnels",
    ["mode", "method"],  # mode: http/socks5, method: GET/CONNECT/...
)

DIAL_FAILURES = Counter(
    "meshgate_dial_failures_total",
    "Outbound dials through the overlay that failed",
    ["mode"],
)

BYTES_TRANSFERRED = Counter(
    "meshgate_bytes_total",
    "Bytes relayed through tunnels",
    ["direction", "protocol"],  # direction: upstream/downstream
)

ACTIVE_TUNNELS = Gauge(
    "meshgate_active_tunnels",
    "Currently open byte tunnels",
    ["mode"],
)

REQUEST_DURATION = Histogram(
    "meshgate_request_duration_seconds",
    "Forward-proxy request latency up to the response head",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
