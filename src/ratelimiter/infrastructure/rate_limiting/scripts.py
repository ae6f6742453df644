"""Lua sources for the strategy scripts.

Each script receives exactly one key (KEYS[1]) and string ARGV, runs as one
atomic unit inside Redis and returns a four element integer array. The
argument order and result shape are shared with every other deployment
talking to the same Redis, so they must not change.

The scripts only use constructs that behave the same under Lua 5.1 (Redis)
and Lua 5.4: no integer division, no ``unpack`` and no concatenation of
non-integral numbers. Every TTL is passed through ``math.ceil`` because
EXPIRE rejects fractional seconds.
"""

FIXED_WINDOW = """
-- ARGV: window_s, limit, now_ms, requested
-- returns: allowed, remaining, window_reset_ms, current_count
local key = KEYS[1]
local window_size = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local requested = tonumber(ARGV[4]) or 1

if not now or now <= 0 or not window_size or window_size <= 0
    or not limit or limit <= 0 or requested <= 0 then
    return {0, 0, 0, 0}
end

local current_time = math.floor(now / 1000)
local window_start = math.floor(current_time / window_size) * window_size
local window_key = key .. ':fixed_window:' .. window_start

local current = tonumber(redis.call('GET', window_key)) or 0
local allowed = 0
local remaining = 0

if current + requested <= limit then
    current = redis.call('INCRBY', window_key, requested)
    allowed = 1
    remaining = limit - current
end

redis.call('EXPIRE', window_key, window_size * 2)

return {allowed, remaining, (window_start + window_size) * 1000, current}
"""

COUNTER = """
-- ARGV: period_s, limit, now_ms, requested
-- returns: allowed, remaining, reset_ms, current_count
local key = KEYS[1]
local period = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local requested = tonumber(ARGV[4]) or 1

if not now or now <= 0 or not period or period <= 0
    or not limit or limit <= 0 or requested <= 0 then
    return {0, 0, 0, 0}
end

local counter_key = key .. ':counter'
local reset_time_key = key .. ':reset_time'
local current_time = math.floor(now / 1000)

local current = tonumber(redis.call('GET', counter_key)) or 0
local reset_time = tonumber(redis.call('GET', reset_time_key)) or 0

if reset_time == 0 or current_time >= reset_time then
    current = 0
    reset_time = current_time + period
    redis.call('SET', counter_key, 0)
    redis.call('SET', reset_time_key, reset_time)
end

local allowed = 0
local remaining = 0

if current + requested <= limit then
    current = redis.call('INCRBY', counter_key, requested)
    allowed = 1
    remaining = limit - current
end

local ttl = reset_time - current_time + 60
redis.call('EXPIRE', counter_key, ttl)
redis.call('EXPIRE', reset_time_key, ttl)

return {allowed, remaining, reset_time * 1000, current}
"""

SLIDING_WINDOW = """
-- ARGV: window_s, limit, now_ms, slices
-- returns: allowed, remaining, slice_reset_ms, current_count
local key = KEYS[1]
local window_size = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local slices = tonumber(ARGV[4]) or 60

if not now or now <= 0 or not window_size or window_size <= 0
    or not limit or limit <= 0 or slices <= 0 then
    return {0, 0, 0, 0}
end

local slice_size = math.max(1, math.floor(window_size / slices))
local current_time = math.floor(now / 1000)
local current_slice = math.floor(current_time / slice_size) * slice_size
local expire_before = current_slice - window_size
local window_key = key .. ':sliding_window'

local current = 0
local stale = {}
local entries = redis.call('HGETALL', window_key)
for i = 1, #entries, 2 do
    local slice_time = tonumber(entries[i])
    local count = tonumber(entries[i + 1]) or 0
    if not slice_time or slice_time <= expire_before then
        stale[#stale + 1] = entries[i]
    elseif slice_time <= current_slice then
        current = current + count
    end
end

for _, field in ipairs(stale) do
    redis.call('HDEL', window_key, field)
end

local allowed = 0
local remaining = 0

if current < limit then
    redis.call('HINCRBY', window_key, current_slice, 1)
    current = current + 1
    allowed = 1
    remaining = limit - current
end

redis.call('EXPIRE', window_key, window_size * 2)

return {allowed, remaining, (current_slice + slice_size) * 1000, current}
"""

TOKEN_BUCKET = """
-- ARGV: capacity, refill_rate, now_ms, requested, warmup_s
-- returns: allowed, tokens, next_refill_ms, wait_ms
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local requested = tonumber(ARGV[4]) or 1
local warmup_period = tonumber(ARGV[5]) or 0

if not now or now <= 0 or not capacity or capacity <= 0
    or not refill_rate or refill_rate <= 0 or requested <= 0 or warmup_period < 0 then
    return {0, 0, 0, 0}
end

local tokens_key = key .. ':token_bucket:tokens'
local last_refill_key = key .. ':token_bucket:last_refill'
local created_key = key .. ':token_bucket:created'
local current_time = now / 1000

local tokens = tonumber(redis.call('GET', tokens_key))
local last_refill = tonumber(redis.call('GET', last_refill_key))
local created = tonumber(redis.call('GET', created_key))

if not created then
    created = current_time
end
if not tokens or not last_refill then
    tokens = capacity
    last_refill = current_time
end

local effective_rate = refill_rate
if warmup_period > 0 then
    local age = current_time - created
    if age < warmup_period then
        effective_rate = refill_rate * math.max(0, age) / warmup_period
    end
end

local elapsed = math.max(0, current_time - last_refill)
tokens = math.min(capacity, tokens + elapsed * effective_rate)
tokens = math.max(0, tokens)

local allowed = 0
local wait_ms = 0
local wait_rate = effective_rate
if wait_rate <= 0 then
    wait_rate = refill_rate
end

if tokens >= requested then
    tokens = tokens - requested
    allowed = 1
else
    wait_ms = math.ceil((requested - tokens) / wait_rate * 1000)
end

local ttl = math.ceil(math.max(3600, capacity / refill_rate * 2))
redis.call('SET', tokens_key, tokens, 'EX', ttl)
redis.call('SET', last_refill_key, current_time, 'EX', ttl)
redis.call('SET', created_key, created, 'EX', ttl)

local next_refill = math.floor((current_time + 1 / wait_rate) * 1000)

return {allowed, math.floor(tokens), next_refill, wait_ms}
"""

LEAKY_BUCKET = """
-- ARGV: capacity, leak_rate, now_ms, requested
-- returns: allowed, volume, next_leak_ms, wait_ms
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local leak_rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local requested = tonumber(ARGV[4]) or 1

if not now or now <= 0 or not capacity or capacity <= 0
    or not leak_rate or leak_rate <= 0 or requested <= 0 then
    return {0, 0, 0, 0}
end

local volume_key = key .. ':leaky_bucket:volume'
local last_leak_key = key .. ':leaky_bucket:last_leak'
local current_time = now / 1000

local volume = tonumber(redis.call('GET', volume_key)) or 0
local last_leak = tonumber(redis.call('GET', last_leak_key)) or current_time

local leaked = math.floor(math.max(0, current_time - last_leak) * leak_rate)
if leaked > 0 then
    volume = math.max(0, volume - leaked)
    if volume == 0 then
        last_leak = current_time
    else
        last_leak = last_leak + leaked / leak_rate
    end
end

local allowed = 0
local wait_ms = 0

if volume + requested <= capacity then
    volume = volume + requested
    allowed = 1
else
    wait_ms = math.ceil((volume + requested - capacity) / leak_rate * 1000)
end

local ttl = math.ceil(math.max(3600, capacity / leak_rate * 2))
redis.call('SET', volume_key, volume, 'EX', ttl)
redis.call('SET', last_leak_key, last_leak, 'EX', ttl)

local next_leak = math.floor((last_leak + 1 / leak_rate) * 1000)

return {allowed, volume, next_leak, wait_ms}
"""

DISTRIBUTED_TOKEN_BUCKET = """
-- ARGV: capacity, refill_rate, now_ms, node_id, requested, weight
-- returns: allowed, node_tokens, global_tokens, next_sync_ms
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local node_id = ARGV[4]
local requested = tonumber(ARGV[5]) or 1
local node_weight = tonumber(ARGV[6]) or 1

if not now or now <= 0 or not capacity or capacity <= 0 or not refill_rate
    or refill_rate <= 0 or requested <= 0 or node_weight <= 0 then
    return {0, 0, 0, 0}
end
if not node_id or node_id == '' then
    node_id = 'default'
end

local node_idle_limit = 300
local bucket_key = key .. ':distributed_bucket'
local global_tokens_key = bucket_key .. ':global_tokens'
local last_refill_key = bucket_key .. ':last_refill'
local nodes_key = bucket_key .. ':nodes'
local node_tokens_key = bucket_key .. ':node:' .. node_id
local node_weight_key = bucket_key .. ':weight:' .. node_id
local node_access_key = bucket_key .. ':last_access:' .. node_id
local current_time = now / 1000

local global_tokens = tonumber(redis.call('GET', global_tokens_key)) or capacity
local last_refill = tonumber(redis.call('GET', last_refill_key)) or current_time

local tokens_to_add = math.floor(math.max(0, current_time - last_refill) * refill_rate)
if tokens_to_add > 0 then
    global_tokens = math.min(capacity, global_tokens + tokens_to_add)
    if global_tokens >= capacity then
        last_refill = current_time
    else
        last_refill = last_refill + tokens_to_add / refill_rate
    end
end

redis.call('SADD', nodes_key, node_id)
redis.call('SET', node_weight_key, node_weight)
redis.call('SET', node_access_key, current_time)

local total_weight = 0
local members = redis.call('SMEMBERS', nodes_key)
for _, n in ipairs(members) do
    local weight_key = bucket_key .. ':weight:' .. n
    local access_key = bucket_key .. ':last_access:' .. n
    local weight = tonumber(redis.call('GET', weight_key))
    local last_access = tonumber(redis.call('GET', access_key))
    if not weight or not last_access or current_time - last_access > node_idle_limit then
        redis.call('SREM', nodes_key, n)
        redis.call('DEL', weight_key, access_key, bucket_key .. ':node:' .. n)
    else
        total_weight = total_weight + weight
    end
end

local node_allocation = 0
if total_weight > 0 then
    node_allocation = math.floor(global_tokens * node_weight / total_weight)
    if global_tokens > 0 and node_allocation == 0 then
        node_allocation = 1
    end
end

local node_tokens = tonumber(redis.call('GET', node_tokens_key)) or 0
node_tokens = node_tokens + math.floor(tokens_to_add * node_weight / math.max(total_weight, 1))
node_tokens = math.min(node_allocation, node_tokens)

local allowed = 0
local granted_node_tokens = node_tokens

if node_tokens >= requested then
    node_tokens = node_tokens - requested
    global_tokens = math.max(0, global_tokens - requested)
    allowed = 1
elseif global_tokens >= requested then
    global_tokens = global_tokens - requested
    allowed = 1
end

local ttl = math.ceil(math.max(3600, capacity / refill_rate * 2))
redis.call('SET', global_tokens_key, global_tokens, 'EX', ttl)
redis.call('SET', last_refill_key, last_refill, 'EX', ttl)
redis.call('SET', node_tokens_key, node_tokens, 'EX', ttl)
redis.call('EXPIRE', nodes_key, ttl)
redis.call('EXPIRE', node_weight_key, ttl)
redis.call('EXPIRE', node_access_key, ttl)

return {allowed, granted_node_tokens, global_tokens, math.floor((current_time + 1) * 1000)}
"""

HOTSPOT = """
-- ARGV: param, normal_limit, hotspot_limit, window_s, now_ms, threshold, detection_window_s
-- returns: allowed, is_hotspot, remaining, level
local base_key = KEYS[1]
local param_value = ARGV[1] or ''
local normal_limit = tonumber(ARGV[2])
local hotspot_limit = tonumber(ARGV[3])
local window_size = tonumber(ARGV[4])
local now = tonumber(ARGV[5])
local hotspot_threshold = tonumber(ARGV[6])
local detection_window = tonumber(ARGV[7]) or 300

if not now or now <= 0 or not normal_limit or normal_limit <= 0 or not hotspot_limit
    or hotspot_limit <= 0 or not window_size or window_size <= 0 or detection_window <= 0 then
    return {0, 0, 0, 0}
end
if not hotspot_threshold or hotspot_threshold <= 0 then
    hotspot_threshold = normal_limit * 2
end

local current_time = math.floor(now / 1000)
local param_key = base_key .. ':param:' .. param_value
local hotspot_list_key = base_key .. ':hotspot_list'
local hotspot_touch_key = base_key .. ':hotspot_touch'
local detection_key = base_key .. ':detection:' .. math.floor(current_time / detection_window)

local detection_count = redis.call('HINCRBY', detection_key, param_value, 1)
redis.call('EXPIRE', detection_key, detection_window * 2)

local tracked = redis.call('ZSCORE', hotspot_list_key, param_value)
if tracked then
    local last_seen = tonumber(redis.call('ZSCORE', hotspot_touch_key, param_value)) or 0
    if current_time - last_seen > detection_window then
        redis.call('ZREM', hotspot_list_key, param_value)
        redis.call('ZREM', hotspot_touch_key, param_value)
        tracked = false
    end
end

local is_hotspot = 0
local hotspot_level = 0

if tracked or detection_count >= hotspot_threshold then
    is_hotspot = 1
    hotspot_level = math.min(3, math.floor(detection_count / hotspot_threshold))
    redis.call('ZADD', hotspot_list_key, detection_count, param_value)
    redis.call('ZADD', hotspot_touch_key, current_time, param_value)
    redis.call('EXPIRE', hotspot_list_key, detection_window * 2)
    redis.call('EXPIRE', hotspot_touch_key, detection_window * 2)
end

local window_id = math.floor(current_time / window_size)
local current_limit = normal_limit
local window_key = param_key .. ':window:' .. window_id

if is_hotspot == 1 then
    current_limit = math.max(1, math.floor(hotspot_limit / (hotspot_level + 1)))
    window_key = param_key .. ':hotspot_window:' .. window_id
end

local current = tonumber(redis.call('GET', window_key)) or 0
local allowed = 0
local remaining = 0

if current < current_limit then
    current = redis.call('INCR', window_key)
    allowed = 1
    remaining = current_limit - current
end

redis.call('EXPIRE', window_key, window_size * 2)

if is_hotspot == 1 then
    local stats_key = base_key .. ':hotspot_stats:' .. param_value .. ':' .. math.floor(current_time / 60)
    redis.call('HINCRBY', stats_key, 'requests', 1)
    if allowed == 0 then
        redis.call('HINCRBY', stats_key, 'blocked', 1)
    end
    redis.call('EXPIRE', stats_key, 3600)
end

if math.random(100) <= 5 then
    local cutoff = current_time - detection_window
    local stale = redis.call('ZRANGEBYSCORE', hotspot_touch_key, '-inf', '(' .. cutoff)
    for _, member in ipairs(stale) do
        redis.call('ZREM', hotspot_list_key, member)
    end
    redis.call('ZREMRANGEBYSCORE', hotspot_touch_key, '-inf', '(' .. cutoff)
end

return {allowed, is_hotspot, remaining, hotspot_level}
"""

STRATEGY_SCRIPTS = {
    "fixed_window": FIXED_WINDOW,
    "counter": COUNTER,
    "sliding_window": SLIDING_WINDOW,
    "token_bucket": TOKEN_BUCKET,
    "leaky_bucket": LEAKY_BUCKET,
    "distributed_token_bucket": DISTRIBUTED_TOKEN_BUCKET,
    "hotspot": HOTSPOT,
}
