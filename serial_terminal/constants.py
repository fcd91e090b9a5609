"""
常量定义

包含 serial_terminal 使用的全局常量。
"""

import termios

# Redis 配置
REDIS_HOST = "localhost"
REDIS_PORT = 6379
CONFIG_DB = 4         # 配置数据库
STATE_DB = 6          # 状态数据库
CHANNEL_TABLE = "SERIAL_CHANNEL"
CHANNEL_PATTERN = "SERIAL_CHANNEL|*"

# 串口默认参数
DEFAULT_BAUD_RATE = 115200
DEFAULT_DATA_BITS = 8
DEFAULT_STOP_BITS = 1
DEFAULT_PARITY = "none"
DEFAULT_FLOW_CONTROL = "none"

DATA_BITS_CHOICES = (5, 6, 7, 8)
STOP_BITS_CHOICES = (1, 2)
PARITY_CHOICES = ("none", "even", "odd")
FLOW_CONTROL_CHOICES = ("none", "hardware")

# 数据位映射
CSIZE_MAP = {
    5: termios.CS5,
    6: termios.CS6,
    7: termios.CS7,
    8: termios.CS8,
}

# 读写配置
READ_CHUNK_SIZE = 4096
MAX_LINE_BUFFER = 5000     # 无换行时强制刷新的阈值（字符）
MAX_HISTORY_LINES = 10000  # 每个通道保留的行数

# 端口发现
PORT_POLL_INTERVAL = 1.0   # 秒
PORT_GLOBS = (
    "/dev/ttyUSB*",
    "/dev/ttyACM*",
    "/dev/ttyS*",
    "/dev/ttyAMA*",
    "/dev/cu.*",
)

# 环境变量
VERBOSE_ENV = "SERIAL_TERMINAL_VERBOSE"
