REDIS_META_KEY = "room:meta:{slug}" # room id - JSON room record, TTL = room lifetime
REDIS_MESSAGES_KEY = "room:messages:{slug}" # room id - list of JSON messages
REDIS_SEQ_KEY = "room:seq:{slug}" # room id - hash {seq, ts}: last message sequence and timestamp (ms)
REDIS_TYPING_KEY = "room:typing:{slug}" # room id - hash sender -> typing expires_at
REDIS_ROOM_CHANNEL = "room:channel:{slug}" # room id - pub/sub channel name
REDIS_EXPIRY_INDEX = "rooms:expiry" # sorted set room id -> expires_at

# printf style; used by both the Redis script and MemoryBackend
MESSAGE_ID_FORMAT = "%013d-%06d" # (timestamp ms, seq)

# **Example `room:meta:{id}` value**
# {"room_id": "{roomId}", "created_at": 1731846896.12, "ttl_seconds": 600}


def room_keys(room_id: str) -> list:
    """Every key holding state owned by a room."""
    return [
        REDIS_META_KEY.format(slug=room_id),
        REDIS_MESSAGES_KEY.format(slug=room_id),
        REDIS_SEQ_KEY.format(slug=room_id),
        REDIS_TYPING_KEY.format(slug=room_id),
    ]
