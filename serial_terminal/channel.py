"""
串口通道

每个通道拥有一个串口句柄、一个行切分器和一个读循环任务。
读循环顺序读取数据块，解码和切分在下一次读之前同步完成。
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .exceptions import TransportReadError
from .line import CapturedLine, LineSegmenter
from .plugins import DecodedFrame, DecoderRegistry, dispatch
from .transport import SerialConfig

log = logging.getLogger(__name__)


class ChannelState(str, Enum):
    """通道生命周期状态"""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"
    ERRORED = "errored"


# 回调函数类型
DataCallback = Callable[[str, CapturedLine, List[DecodedFrame]], None]
StateCallback = Callable[[str, ChannelState], None]
ErrorCallback = Callable[[str, str], None]


class Channel:
    """一个独立管理的串口连接"""

    def __init__(self, channel_id: str, config: SerialConfig, transport: Any,
                 registry: DecoderRegistry,
                 on_data: Optional[DataCallback] = None,
                 on_state: Optional[StateCallback] = None,
                 on_error: Optional[ErrorCallback] = None,
                 verbose: bool = False):
        self.channel_id = channel_id
        self.config = config
        self.transport = transport
        self.registry = registry
        self.decoder: Optional[str] = config.decoder
        self.verbose = verbose

        self._on_data = on_data
        self._on_state = on_state
        self._on_error = on_error

        self.segmenter = LineSegmenter(on_line=self._on_line_captured)
        self.write_lock = asyncio.Lock()
        self.state: ChannelState = ChannelState.CONNECTING
        self.running: bool = False
        self._read_task: Optional[asyncio.Task] = None

    @property
    def read_task(self) -> Optional[asyncio.Task]:
        return self._read_task

    def start(self) -> None:
        """启动读循环"""
        self.running = True
        self._set_state(ChannelState.CONNECTED)
        self._read_task = asyncio.create_task(
            self._read_loop(), name=f"serial-read-{self.channel_id}"
        )
        log.info(f"[{self.channel_id}] Started: {self.config.device} "
                 f"(decoder={self.decoder or 'none'})")

    async def stop(self) -> None:
        """
        停止通道

        流程:
        1. 清除 running 标志，中止正在等待的读
        2. 取消并等待读循环任务
        3. 丢弃 buffer 中未以换行结束的文本
        4. 关闭串口（失败只记录日志）
        """
        self.running = False
        self._set_state(ChannelState.DISCONNECTING)

        self.transport.cancel_read()

        task, self._read_task = self._read_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        dropped = self.segmenter.flush()
        if dropped:
            log.debug(f"[{self.channel_id}] Dropped {len(dropped)} chars of partial line")

        try:
            self.transport.close()
        except Exception as e:
            log.error(f"[{self.channel_id}] Error closing port: {e}")

        self._set_state(ChannelState.DISCONNECTED)
        log.info(f"[{self.channel_id}] Stopped")

    def process_chunk(self, data: bytes) -> List[CapturedLine]:
        """解码并切分一个数据块"""
        if self.verbose:
            log.debug(f"[{self.channel_id}] RX {len(data)}B: {data.hex(' ').upper()}")
        frames = dispatch(self.registry, self.decoder, data)
        return self.segmenter.process(data, frames)

    def status(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "state": self.state.value,
            "config": self.config.to_dict(),
            "decoder": self.decoder,
        }

    async def _read_loop(self) -> None:
        """读循环：每次迭代等待一个数据块"""
        log.info(f"[{self.channel_id}] Read loop started")

        while self.running:
            try:
                data = await self.transport.read()
            except (TransportReadError, OSError) as e:
                log.error(f"[{self.channel_id}] Read failed: {e}")
                self._set_state(ChannelState.ERRORED)
                if self._on_error:
                    self._on_error(self.channel_id, f"Read failed: {e}")
                break

            if not self.running:
                break

            if data is None:
                log.info(f"[{self.channel_id}] End of stream")
                self._set_state(ChannelState.IDLE)
                break

            if not data:
                continue

            self.process_chunk(data)

        log.info(f"[{self.channel_id}] Read loop stopped")

    def _on_line_captured(self, line: CapturedLine) -> None:
        if self._on_data:
            self._on_data(self.channel_id, line, line.frames)

    def _set_state(self, state: ChannelState) -> None:
        if self.state == state:
            return
        self.state = state
        if self._on_state:
            self._on_state(self.channel_id, state)
