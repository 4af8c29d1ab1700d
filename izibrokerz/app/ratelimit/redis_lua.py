"""Redis Lua scripts for the shared bucket store.

Each script runs atomically inside Redis, so instances behind a load
balancer share one bucket per key instead of multiplying the capacity.

KEYS[1] is the sorted set of hit timestamps (ms), KEYS[2] the cooldown
marker. Both return {allowed, remaining, ms_before_next, blocked}.
"""

# Prune the window, then either record the hits or deny. The denial that finds
# the window exhausted starts the cooldown and drops the window behind it, so
# the key comes back with full capacity once the marker expires.
CONSUME_SCRIPT = """
    local hits_key = KEYS[1]
    local block_key = KEYS[2]
    local capacity = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local cooldown_ms = tonumber(ARGV[3])
    local now_ms = tonumber(ARGV[4])
    local points = tonumber(ARGV[5])
    local member = ARGV[6]

    local block_ttl = redis.call('PTTL', block_key)
    if block_ttl > 0 then
        return {0, 0, block_ttl, 1}
    end

    redis.call('ZREMRANGEBYSCORE', hits_key, '-inf', now_ms - window_ms)
    local used = redis.call('ZCARD', hits_key)

    if used + points <= capacity then
        for i = 1, points do
            redis.call('ZADD', hits_key, now_ms, member .. ':' .. i)
        end
        redis.call('PEXPIRE', hits_key, window_ms)
        local oldest = redis.call('ZRANGE', hits_key, 0, 0, 'WITHSCORES')
        return {1, capacity - used - points, tonumber(oldest[2]) + window_ms - now_ms, 0}
    end

    if cooldown_ms > 0 then
        redis.call('DEL', hits_key)
        redis.call('SET', block_key, '1', 'PX', cooldown_ms)
        return {0, 0, cooldown_ms, 1}
    end

    local wait_ms = window_ms
    local oldest = redis.call('ZRANGE', hits_key, 0, 0, 'WITHSCORES')
    if oldest[2] then
        wait_ms = tonumber(oldest[2]) + window_ms - now_ms
    end
    return {0, 0, wait_ms, 0}
"""

# Read-only view of a bucket; allowed = -1 means no live bucket.
PEEK_SCRIPT = """
    local hits_key = KEYS[1]
    local block_key = KEYS[2]
    local capacity = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])

    local block_ttl = redis.call('PTTL', block_key)
    if block_ttl > 0 then
        return {0, 0, block_ttl, 1}
    end

    local oldest = redis.call(
        'ZRANGEBYSCORE', hits_key, '(' .. (now_ms - window_ms), '+inf',
        'WITHSCORES', 'LIMIT', 0, 1
    )
    if not oldest[2] then
        return {-1, capacity, 0, 0}
    end
    local used = redis.call('ZCOUNT', hits_key, '(' .. (now_ms - window_ms), '+inf')
    local allowed = 0
    if used < capacity then
        allowed = 1
    end
    return {allowed, capacity - used, tonumber(oldest[2]) + window_ms - now_ms, 0}
"""
