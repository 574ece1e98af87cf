from prometheus_client import Counter, Gauge

WS_CONNECTIONS = Gauge(
    "inbox_ws_connections",
    "Authenticated real-time connections on this instance",
)
EVENTS_DROPPED = Counter(
    "inbox_events_dropped_total",
    "Events dropped because a client's outbound queue was full",
    ["event_type"],
)
MESSAGES = Counter(
    "inbox_messages_total",
    "Messages persisted by the conversation registry",
    ["direction", "status"],
)
