"""
工具函数

包含串口配置、端口发现、发送内容编码等工具函数。
"""

import os
import re
import glob
import fcntl
import termios
import logging
from typing import Iterable, List, Dict

from .constants import CSIZE_MAP, PORT_GLOBS
from .exceptions import EncodingError

log = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_HEX_DIGITS = re.compile(r"[0-9a-fA-F]*")
_BIN_DIGITS = re.compile(r"[01]*")


def set_nonblocking(fd: int) -> None:
    """设置文件描述符为非阻塞模式"""
    flags = fcntl.fcntl(fd, fcntl.F_GETFL)
    fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)


def baud_constant(baud: int) -> int:
    """波特率 -> termios 常量，不支持时抛出 ValueError"""
    speed = getattr(termios, f"B{baud}", None)
    if speed is None:
        raise ValueError(f"Unsupported baud rate {baud}")
    return speed


def configure_serial(fd: int, baud: int, data_bits: int = 8, stop_bits: int = 1,
                     parity: str = "none", flow_control: str = "none") -> None:
    """配置串口参数（波特率、数据位、停止位、校验、流控），raw 模式"""
    attrs = termios.tcgetattr(fd)
    attrs[0] &= ~(termios.IGNBRK | termios.BRKINT | termios.PARMRK |
                  termios.ISTRIP | termios.INLCR | termios.IGNCR |
                  termios.ICRNL | termios.IXON | termios.IXOFF)
    attrs[1] &= ~termios.OPOST
    attrs[2] &= ~(termios.CSIZE | termios.PARENB | termios.PARODD |
                  termios.CSTOPB | termios.CRTSCTS)
    attrs[2] |= (CSIZE_MAP[data_bits] | termios.CREAD | termios.CLOCAL)
    if stop_bits == 2:
        attrs[2] |= termios.CSTOPB
    if parity == "even":
        attrs[2] |= termios.PARENB
    elif parity == "odd":
        attrs[2] |= termios.PARENB | termios.PARODD
    if flow_control == "hardware":
        attrs[2] |= termios.CRTSCTS
    attrs[3] &= ~(termios.ECHO | termios.ECHONL | termios.ICANON |
                  termios.ISIG | termios.IEXTEN)
    attrs[6][termios.VMIN] = 1
    attrs[6][termios.VTIME] = 0
    speed = baud_constant(baud)
    attrs[4] = attrs[5] = speed
    termios.tcsetattr(fd, termios.TCSANOW, attrs)
    termios.tcflush(fd, termios.TCIOFLUSH)


# ============================================================
# 端口发现
# ============================================================

def list_serial_ports(extra: Iterable[str] = (), patterns: Iterable[str] = PORT_GLOBS) -> List[Dict[str, str]]:
    """
    列出当前存在的串口设备

    Args:
        extra: 额外加入的设备路径（如 PTY），只有存在时才列出
        patterns: glob 模式

    Returns:
        [{"id": "port-0", "device": "/dev/ttyUSB0"}, ...]，按设备路径排序
    """
    devices = set()
    for pattern in patterns:
        devices.update(glob.glob(pattern))
    devices.update(dev for dev in extra if os.path.exists(dev))

    return [
        {"id": f"port-{i}", "device": dev}
        for i, dev in enumerate(sorted(devices))
    ]


# ============================================================
# 发送内容编码
# ============================================================

def encode_payload(payload: str, mode: str = "ascii") -> bytes:
    """
    按发送模式把用户输入编码为字节

    - ascii: 不以换行结尾时追加 CRLF
    - hex: 去掉空白后必须是偶数个十六进制数字
    - bin: 去掉空白后每 8 位一组，最后不足 8 位的右侧补 0

    Raises:
        EncodingError: hex/bin 内容格式错误
    """
    if mode == "hex":
        clean = _WHITESPACE.sub("", payload)
        if len(clean) % 2 != 0:
            raise EncodingError("Invalid HEX string (odd number of characters).")
        if not _HEX_DIGITS.fullmatch(clean):
            raise EncodingError("Invalid HEX string (non-hex characters).")
        return bytes.fromhex(clean)

    if mode == "bin":
        clean = _WHITESPACE.sub("", payload)
        if not _BIN_DIGITS.fullmatch(clean):
            raise EncodingError("Invalid binary string (only 0 and 1 allowed).")
        return bytes(
            int(clean[i:i + 8].ljust(8, "0"), 2)
            for i in range(0, len(clean), 8)
        )

    text = payload
    if not text.endswith("\n"):
        text += "\r\n"
    return text.encode("utf-8")
