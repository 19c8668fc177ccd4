"""Default values shared across shipyard components."""

DEFAULT_CREDENTIAL_LIFETIME_SECONDS = 300
MAX_CREDENTIAL_LIFETIME_SECONDS = 900
DEFAULT_ISSUE_TIMEOUT_SECONDS = 10.0

DEFAULT_HEALTH_TIMEOUT_SECONDS = 60.0
DEFAULT_HEALTH_INTERVAL_SECONDS = 5.0
DEFAULT_APPROVAL_TIMEOUT_SECONDS = 3600.0

DEFAULT_CACHE_MAX_TOTAL_BYTES = 1024 * 1024 * 1024
DEFAULT_CACHE_LOOKUP_WAIT_SECONDS = 300.0

DEFAULT_STAGE_SCOPE = frozenset({"deploy", "rollback"})

ENV_PREFIX = "SHIPYARD_"
