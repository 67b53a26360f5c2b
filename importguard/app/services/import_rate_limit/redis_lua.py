"""Redis Lua scripts for the sliding window import rate limiter.

These scripts run server-side as one indivisible unit so that pruning and
counting a window cannot interleave with a concurrent increment.
"""

# Atomic evict-and-count over one sorted set key.
# KEYS[1]  window key (<prefix>:<identifier>)
# ARGV[1]  window start in ms; entries scored strictly below it are removed
# ARGV[2]  now in ms
# ARGV[3]  window length in ms
# Returns {count, oldest_score}; oldest_score is nil when the window is empty.
EVICT_AND_COUNT_SCRIPT = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[3])

    redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. ARGV[1])

    local count = redis.call('ZCARD', key)

    local oldest = false
    if count > 0 then
        local range = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        if #range > 0 then
            oldest = range[2]
        end
        -- Idle identifiers vanish on their own once the window has passed
        redis.call('EXPIRE', key, math.ceil(window_ms / 1000))
    end

    return {count, oldest}
"""
