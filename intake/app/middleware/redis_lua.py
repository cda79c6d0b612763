"""Redis Lua scripts for the distributed rate limiter.

The token bucket read-modify-write runs inside Redis so that concurrent API
instances checking the same client never race between reading the bucket
and writing it back.
"""

# Atomic token bucket.
#
# KEYS[1]: bucket key ("rl:{ip}"), a hash with fields t (tokens) and ts (ms)
# ARGV[1]: current time in milliseconds
# ARGV[2]: refill rate (tokens per second)
# ARGV[3]: burst size (max tokens)
# ARGV[4]: key TTL in seconds
#
# Returns {allowed (1|0), floor(tokens left)}.
TOKEN_BUCKET_SCRIPT = """
    local key    = KEYS[1]
    local now_ms = tonumber(ARGV[1])
    local rate   = tonumber(ARGV[2])
    local burst  = tonumber(ARGV[3])
    local ttl    = tonumber(ARGV[4])

    local data    = redis.call('HMGET', key, 't', 'ts')
    local tokens  = tonumber(data[1])
    local last_ms = tonumber(data[2])

    -- First request from this identity starts with a full bucket
    if tokens == nil or last_ms == nil then
        tokens  = burst
        last_ms = now_ms
    end

    local elapsed_s = math.max(0, now_ms - last_ms) / 1000
    tokens = math.min(burst, tokens + elapsed_s * rate)

    local allowed = 0
    if tokens >= 1 then
        tokens = tokens - 1
        allowed = 1
    end

    -- Denied attempts still persist the refill so the clock keeps moving
    redis.call('HSET', key, 't', tostring(tokens), 'ts', tostring(now_ms))
    redis.call('EXPIRE', key, ttl)

    return {allowed, math.floor(tokens)}
"""
