from prometheus_client import Counter, Histogram

REQ_LATENCY = Histogram("remote_subs_request_seconds", "Request latency seconds", ["route"])  # noqa: N816
SUBTITLES_COUNT = Counter(  # noqa: N816
    "remote_subs_subtitles_total", "Subtitle queries by outcome", ["media_type", "outcome"]
)
PROXY_COUNT = Counter("remote_subs_proxy_total", "File proxy responses", ["status"])  # noqa: N816
