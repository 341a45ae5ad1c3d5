import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# Takes precedence over host/port/password when set, e.g. rediss://:secret@cache:6380/0
REDIS_URL = os.getenv("REDIS_URL", None)

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

# "redis" or "memory" (single process only)
STORE_BACKEND = os.getenv("STORE_BACKEND", "redis")

ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 600))
TYPING_TTL_SECONDS = float(os.getenv("TYPING_TTL_SECONDS", 3))
EXPIRY_SWEEP_INTERVAL = float(os.getenv("EXPIRY_SWEEP_INTERVAL", 1.0))
SUBSCRIBER_QUEUE_SIZE = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", 256))

STORE_RETRY_ATTEMPTS = int(os.getenv("STORE_RETRY_ATTEMPTS", 3))
STORE_RETRY_BACKOFF_SECONDS = float(os.getenv("STORE_RETRY_BACKOFF_SECONDS", 0.1))
