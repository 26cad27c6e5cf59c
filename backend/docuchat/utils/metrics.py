"""Prometheus metrics shared across services."""
from prometheus_client import Counter, Histogram


DOCUMENTS_PROCESSED = Counter(
    "docuchat_documents_processed_total",
    "Documents that reached a terminal processing state",
    ["status"],
)
CHAT_TURNS = Counter(
    "docuchat_chat_turns_total",
    "Chat turns by outcome",
    ["outcome"],
)
RATE_LIMITED = Counter(
    "docuchat_rate_limited_total",
    "Requests rejected by the rate limiter",
    ["route"],
)
CACHE_REQUESTS = Counter(
    "docuchat_retrieval_cache_requests_total",
    "Retrieval cache lookups",
    ["result"],
)
PROVIDER_LATENCY = Histogram(
    "docuchat_provider_request_seconds",
    "Latency of provider calls until the first response byte",
    ["provider"],
)
