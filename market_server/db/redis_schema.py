"""
Redis 数据结构设计文档
键名是持久化布局的一部分, 修改会导致与现有数据不兼容
"""

# ============================================
# 1. 行情流 (Price Feed)
# ============================================
# Key: market:feed:time   Type: Sorted Set  score = 提交时间戳 (ms)
# Key: market:feed:price  Type: Sorted Set  score = 价格
# TTL: None (由写入时裁剪或每日任务清理)
#
# member 是记录本身的紧凑 JSON, 两个集合存放同一字符串:
#   ZADD market:feed:time  1705123456789 '{"code":"ABC123","price":12.5,"server":"s1","ts":1705123456789}'
#   ZADD market:feed:price 12.5          '{"code":"ABC123","price":12.5,"server":"s1","ts":1705123456789}'
#
# 最新 50 条: ZREVRANGE market:feed:time 0 49
# 最高价 50 条: ZREVRANGE market:feed:price 0 49
FEED_TIME_KEY = "market:feed:time"
FEED_PRICE_KEY = "market:feed:price"

# ============================================
# 2. 用户反馈 (Feedback)
# ============================================
# Key: admin:feedback:{id}   Type: String (JSON)
# Key: admin:feedback:index  Type: Sorted Set  score = createdAt, member = id
FEEDBACK_KEY_PREFIX = "admin:feedback:"
FEEDBACK_INDEX_KEY = "admin:feedback:index"

# ============================================
# 3. 管理日志 (Audit Log)
# ============================================
# Key: admin:logs  Type: List (LPUSH + LTRIM, 最多保留 500 条)
ADMIN_LOGS_KEY = "admin:logs"
ADMIN_LOGS_MAX = 500

# ============================================
# 4. 账号 (Users / Sessions / Captcha)
# ============================================
# Key: auth:user:{username}  Type: String (JSON)
# Key: auth:users            Type: Set of usernames
# Key: auth:captcha:{id}     Type: String  TTL: 5 minutes
# Key: session:{token}       Type: String (username)  TTL: SESSION_TTL_HOURS
USER_KEY_PREFIX = "auth:user:"
USER_INDEX_KEY = "auth:users"
CAPTCHA_KEY_PREFIX = "auth:captcha:"
SESSION_KEY_PREFIX = "session:"

# ============================================
# 5. 限流 (Rate Limit)
# ============================================
# Key: ratelimit:{client_ip}  Type: String counter  TTL: RATE_LIMIT_WINDOW_SECONDS
RATE_LIMIT_KEY_PREFIX = "ratelimit:"
