"""Internal constants shared across the library."""

USER_AGENT = "pycloudsync"

DEFAULT_TABLE = "user_data"
DEFAULT_SCHEMA = "public"

#: PostgREST error codes that mean "no such entry".
#: ``PGRST116`` is the single-object request that matched zero rows.
NOT_FOUND_CODES: frozenset[str] = frozenset({"PGRST116", "PGRST204"})

#: Logical keys written to the local cache before cloud sync existed.
DEFAULT_MIGRATION_KEYS: tuple[str, ...] = ("students", "lessons", "classes")

MIGRATION_SENTINEL_KEY = "migration_completed"
MIGRATION_SENTINEL_VALUE = "true"

KEY_SEPARATOR = ":"

# ------------------------------------------------------------------
# Supabase Realtime (Phoenix channel protocol)
# ------------------------------------------------------------------

REALTIME_PATH = "/realtime/v1/websocket"
REALTIME_VSN = "1.0.0"
PHOENIX_TOPIC = "phoenix"
CHANNEL_TOPIC_PREFIX = "realtime:"
CHANNEL_NAME = "user_data_changes"
DEFAULT_HEARTBEAT_INTERVAL = 25.0
#: Seconds to wait before each reconnect attempt; the last value repeats.
DEFAULT_RECONNECT_DELAYS: tuple[float, ...] = (1.0, 2.0, 5.0, 10.0, 30.0)
