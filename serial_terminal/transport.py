"""
串口传输层

SerialConfig 描述一个通道的串口参数；SerialTransport 在原始文件描述符上实现
可取消的顺序读、写和关闭，读写就绪通过事件循环的 add_reader/add_writer 等待。
"""

import os
import termios
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping, Optional

from .constants import (
    DEFAULT_BAUD_RATE, DEFAULT_DATA_BITS, DEFAULT_STOP_BITS,
    DEFAULT_PARITY, DEFAULT_FLOW_CONTROL,
    DATA_BITS_CHOICES, STOP_BITS_CHOICES, PARITY_CHOICES, FLOW_CONTROL_CHOICES,
    READ_CHUNK_SIZE,
)
from .exceptions import TransportOpenError, TransportReadError, TransportWriteError
from .util import set_nonblocking, configure_serial

log = logging.getLogger(__name__)


# 兼容前端风格的 camelCase 键
_KEY_ALIASES = {
    "path": "device",
    "port": "device",
    "baud": "baud_rate",
    "baudRate": "baud_rate",
    "dataBits": "data_bits",
    "stopBits": "stop_bits",
    "flowControl": "flow_control",
    "decoderSelect": "decoder",
}


# ============================================================
# SerialConfig
# ============================================================

@dataclass
class SerialConfig:
    """串口配置"""
    device: str
    baud_rate: int = DEFAULT_BAUD_RATE
    data_bits: int = DEFAULT_DATA_BITS
    stop_bits: int = DEFAULT_STOP_BITS
    parity: str = DEFAULT_PARITY
    flow_control: str = DEFAULT_FLOW_CONTROL
    decoder: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """校验参数，非法时抛出 ValueError"""
        if not self.device:
            raise ValueError("Serial device path is required")
        if not isinstance(self.baud_rate, int) or self.baud_rate <= 0:
            raise ValueError(f"Invalid baud rate {self.baud_rate!r}")
        if self.data_bits not in DATA_BITS_CHOICES:
            raise ValueError(f"Invalid data bits {self.data_bits!r}, expected one of {DATA_BITS_CHOICES}")
        if self.stop_bits not in STOP_BITS_CHOICES:
            raise ValueError(f"Invalid stop bits {self.stop_bits!r}, expected one of {STOP_BITS_CHOICES}")
        if self.parity not in PARITY_CHOICES:
            raise ValueError(f"Invalid parity {self.parity!r}, expected one of {PARITY_CHOICES}")
        if self.flow_control not in FLOW_CONTROL_CHOICES:
            raise ValueError(f"Invalid flow control {self.flow_control!r}, expected one of {FLOW_CONTROL_CHOICES}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'SerialConfig':
        """
        从宽松输入构造配置

        - 支持 camelCase 与 snake_case 键
        - 数值可以是字符串，空值使用默认值
        - decoder 为空或 "none" 表示不解码
        """
        values: Dict[str, Any] = {}
        for key, value in data.items():
            values[_KEY_ALIASES.get(key, key)] = value

        def as_int(name: str, default: int) -> int:
            raw = values.get(name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except (TypeError, ValueError):
                raise ValueError(f"Invalid {name} {raw!r}")

        decoder = values.get("decoder") or None
        if isinstance(decoder, str) and decoder.lower() == "none":
            decoder = None

        return cls(
            device=str(values.get("device") or ""),
            baud_rate=as_int("baud_rate", DEFAULT_BAUD_RATE),
            data_bits=as_int("data_bits", DEFAULT_DATA_BITS),
            stop_bits=as_int("stop_bits", DEFAULT_STOP_BITS),
            parity=str(values.get("parity") or DEFAULT_PARITY).lower(),
            flow_control=str(values.get("flow_control") or DEFAULT_FLOW_CONTROL).lower(),
            decoder=decoder,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================
# SerialTransport
# ============================================================

class SerialTransport:
    """
    基于文件描述符的串口句柄

    读操作严格顺序：同一时刻最多一个等待中的 read()，cancel_read() 可以中止它。
    """

    def __init__(self, config: SerialConfig, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.config = config
        self.device = config.device
        self.loop = loop
        self.fd: int = -1
        self._read_waiter: Optional[asyncio.Future] = None
        self._write_waiter: Optional[asyncio.Future] = None

    @property
    def is_open(self) -> bool:
        return self.fd >= 0

    def open(self) -> None:
        """打开并配置串口，失败时抛出 TransportOpenError"""
        if self.loop is None:
            self.loop = asyncio.get_running_loop()
        try:
            self.fd = os.open(self.device, os.O_RDWR | os.O_NOCTTY | os.O_NONBLOCK)
            configure_serial(
                self.fd,
                self.config.baud_rate,
                data_bits=self.config.data_bits,
                stop_bits=self.config.stop_bits,
                parity=self.config.parity,
                flow_control=self.config.flow_control,
            )
            set_nonblocking(self.fd)
        except (OSError, termios.error, ValueError) as e:
            self._close_fd()
            raise TransportOpenError(f"Failed to open {self.device}: {e}") from e
        log.info(f"Opened {self.device} ({self.config.baud_rate} "
                 f"{self.config.data_bits}{self.config.parity[0].upper()}{self.config.stop_bits})")

    async def read(self, size: int = READ_CHUNK_SIZE) -> bytes:
        """
        读取下一个数据块

        先等待 fd 可读再读取；没有数据时一直等待，没有读超时。
        可读但读到 0 字节表示设备已挂断（拔出或对端关闭）。

        Returns:
            非空数据块

        Raises:
            TransportReadError: 读失败或设备挂断
            asyncio.CancelledError: 被 cancel_read() 中止
        """
        while True:
            if self.fd < 0:
                raise TransportReadError(f"{self.device} is not open")
            await self._wait_readable()
            if self.fd < 0:
                raise TransportReadError(f"{self.device} is not open")
            try:
                data = os.read(self.fd, size)
            except BlockingIOError:
                continue
            except OSError as e:
                raise TransportReadError(str(e)) from e
            if not data:
                raise TransportReadError(f"{self.device} hung up")
            return data

    def cancel_read(self) -> None:
        """中止正在等待的 read()"""
        if self._read_waiter is not None and not self._read_waiter.done():
            self._read_waiter.cancel()

    async def write(self, data: bytes) -> None:
        """写入全部数据，失败时抛出 TransportWriteError"""
        view = memoryview(data)
        while view:
            if self.fd < 0:
                raise TransportWriteError(f"{self.device} is not open")
            try:
                written = os.write(self.fd, view)
            except BlockingIOError:
                await self._wait_writable()
                continue
            except OSError as e:
                raise TransportWriteError(str(e)) from e
            view = view[written:]

    def close(self) -> None:
        """关闭串口，关闭失败时抛出 OSError"""
        self.cancel_read()
        if self._write_waiter is not None and not self._write_waiter.done():
            self._write_waiter.cancel()
        fd, self.fd = self.fd, -1
        if fd >= 0:
            if self.loop is not None:
                self.loop.remove_reader(fd)
                self.loop.remove_writer(fd)
            os.close(fd)
            log.info(f"Closed {self.device}")

    def is_present(self) -> bool:
        """设备节点是否仍然存在（用于拔出检测）"""
        return os.path.exists(self.device)

    async def _wait_readable(self) -> None:
        self._read_waiter = self.loop.create_future()
        self.loop.add_reader(self.fd, self._wake, self._read_waiter)
        try:
            await self._read_waiter
        finally:
            self._remove_fd_callback(self.loop.remove_reader)
            self._read_waiter = None

    async def _wait_writable(self) -> None:
        self._write_waiter = self.loop.create_future()
        self.loop.add_writer(self.fd, self._wake, self._write_waiter)
        try:
            await self._write_waiter
        finally:
            self._remove_fd_callback(self.loop.remove_writer)
            self._write_waiter = None

    def _remove_fd_callback(self, remove) -> None:
        if self.fd >= 0:
            remove(self.fd)

    @staticmethod
    def _wake(waiter: asyncio.Future) -> None:
        if not waiter.done():
            waiter.set_result(None)

    def _close_fd(self) -> None:
        if self.fd >= 0:
            try:
                os.close(self.fd)
            except OSError as e:
                log.warning(f"Failed to close {self.device} after open error: {e}")
            self.fd = -1


def open_transport(config: SerialConfig) -> SerialTransport:
    """打开串口传输，失败时抛出 TransportOpenError"""
    transport = SerialTransport(config)
    transport.open()
    return transport
