"""
Centralized Prometheus metrics definitions for the Chessmaster server.

Grouping every instrumentation point here gives a single overview of what the
lobby gateway, the engine adapter and the analysis pipeline report.
"""
from prometheus_client import Counter, Gauge, Histogram

PREFIX = "chessmaster"

# --- Online Play Metrics ---

CONNECTIONS_OPEN = Gauge(
    f"{PREFIX}_connections_open",
    "Current number of open client connections.",
)

LOBBIES_OPEN = Gauge(
    f"{PREFIX}_lobbies_open",
    "Current number of lobbies held by the registry (waiting or active).",
)

MESSAGES_RECEIVED_TOTAL = Counter(
    f"{PREFIX}_messages_received_total",
    "Total number of client messages dispatched, by envelope type.",
    ["type"],
)

ERROR_REPLIES_TOTAL = Counter(
    f"{PREFIX}_error_replies_total",
    "Total number of error replies sent to clients, by error code.",
    ["code"],
)

GAMES_COMPLETED_TOTAL = Counter(
    f"{PREFIX}_games_completed_total",
    "Total number of online games finalized, by reason.",
    ["reason"],  # e.g., reason="checkmate", "resign", "disconnect_timeout"
)

CONNECTIONS_TERMINATED_TOTAL = Counter(
    f"{PREFIX}_connections_terminated_total",
    "Total number of connections force-closed for not answering a ping.",
)

# --- Engine & Analysis Metrics ---

ENGINE_SEARCHES_TOTAL = Counter(
    f"{PREFIX}_engine_searches_total",
    "Total number of engine search calls, by outcome.",
    ["outcome"],  # e.g., outcome="ok", "timeout", "premature-exit"
)

ENGINE_SEARCH_DURATION_SECONDS = Histogram(
    f"{PREFIX}_engine_search_duration_seconds",
    "Histogram of the wall time of a single engine search call.",
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
)

ANALYSIS_PLIES_TOTAL = Counter(
    f"{PREFIX}_analysis_plies_total",
    "Total number of plies evaluated by the game analysis pipeline.",
)

ANALYSIS_ANNOTATIONS_TOTAL = Counter(
    f"{PREFIX}_analysis_annotations_total",
    "Total number of flagged moves, by severity.",
    ["severity"],
)

# --- Persistence Metrics ---

PERSISTENCE_QUEUE_DEPTH = Gauge(
    f"{PREFIX}_persistence_queue_depth",
    "Current number of completed-game records waiting to be written.",
)

TRANSIENT_ERRORS_TOTAL = Counter(
    f"{PREFIX}_transient_errors_total",
    "Total number of transient errors seen by retried operations.",
    ["target"]  # e.g., target="games", "download"
)
