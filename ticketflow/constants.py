"""Shared defaults for ticketflow."""

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_BACKOFF_MULTIPLIER = 1.0
DEFAULT_MAX_RETRY_DELAY_SECONDS = 30.0

BATCH_IDLE_TIMEOUT_SECONDS = 60.0
ANALYSIS_IDLE_TIMEOUT_SECONDS = 120.0

MAX_BATCH_ITEMS = 100
MAX_BATCH_ANSWERS = 500

STREAM_MARKER = "data: "

CANCELLED_BY_REVIEWER = "cancelled by reviewer"
