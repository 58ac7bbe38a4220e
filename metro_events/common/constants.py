"""Application constants."""

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 metro-events/1.0"
)
COMMANDS = (
    "run",
    "rank",
    "feed",
    "serve",
    "sweep-limits",
)
EXIT_SUCCESS = 0
EXIT_PARTIAL = 10
EXIT_HARD_FAIL = 20
DEFAULT_TOP_N = 30
DEFAULT_EVENT_DURATION_HOURS = 2
CRON_SECRET_ENV = "METRO_EVENTS_CRON_SECRET"
JSON_LOG_FIELDS = (
    "timestamp",
    "level",
    "logger",
    "run_id",
    "stage",
    "source",
    "event",
    "status",
    "attempt",
    "duration_ms",
    "rows_in",
    "rows_out",
    "error_code",
    "message",
)
BUILTIN_CONNECTOR_KINDS = (
    "ticketmaster_api",
    "cityspark_api",
    "jsonld_page",
    "eventbrite_hybrid",
)
COMPLETENESS_FIELDS = ("description", "image", "price", "end", "venue")
HIDDEN_STALE = "stale"
HIDDEN_FILTERED = "filtered"
