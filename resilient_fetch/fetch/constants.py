"""HTTP constants for the fetch layer.

Status codes, limits and defaults shared by the fetch modules.
"""

# HTTP Status Code Ranges
HTTP_STATUS_NOT_MODIFIED = 304
HTTP_STATUS_BAD_REQUEST = 400
HTTP_STATUS_TOO_MANY_REQUESTS = 429
HTTP_STATUS_SERVER_ERROR_MIN = 500

# Statuses worth another attempt; every other error status is terminal
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})

# Response Size Limits
DEFAULT_MAX_RESPONSE_SIZE_BYTES = 10 * 1024 * 1024  # 10 MB

# Chunk size for streaming reads
DEFAULT_CHUNK_SIZE = 8192

# Upper bound honoured for a server-provided Retry-After hint (milliseconds)
MAX_RETRY_AFTER_MS = 300_000

# Dispatcher tick
DEFAULT_DISPATCH_INTERVAL_MS = 100

DEFAULT_USER_AGENT = "resilient-fetch/1.0"
