"""
通知接口

ChannelListener 是观察者接口，ChannelManager 在事件循环中按顺序回调，
同一通道的事件顺序与数据到达顺序一致。
"""

import asyncio
import logging
from typing import Any, Dict, List, NamedTuple, Optional

from .line import CapturedLine
from .plugins import DecodedFrame

log = logging.getLogger(__name__)


EVENT_DATA = "data"
EVENT_STATUS = "status"
EVENT_ERROR = "error"
EVENT_PORTS = "ports"


class ChannelListener:
    """观察者基类，默认实现全部为空"""

    def on_data(self, channel_id: str, line: CapturedLine, frames: List[DecodedFrame]) -> None:
        pass

    def on_status(self, channel_id: str, state: str, config: Optional[Dict[str, Any]]) -> None:
        pass

    def on_error(self, channel_id: str, message: str) -> None:
        pass

    def on_ports_updated(self, ports: List[Dict[str, str]]) -> None:
        pass


class ChannelEvent(NamedTuple):
    kind: str
    channel_id: Optional[str]
    payload: Any


class QueueListener(ChannelListener):
    """把事件放入 asyncio.Queue，供消费者协程按顺序读取"""

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    def on_data(self, channel_id, line, frames):
        self._put(ChannelEvent(EVENT_DATA, channel_id, (line, list(frames))))

    def on_status(self, channel_id, state, config):
        self._put(ChannelEvent(EVENT_STATUS, channel_id, (state, config)))

    def on_error(self, channel_id, message):
        self._put(ChannelEvent(EVENT_ERROR, channel_id, message))

    def on_ports_updated(self, ports):
        self._put(ChannelEvent(EVENT_PORTS, None, list(ports)))

    def _put(self, event: ChannelEvent) -> None:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            log.warning(f"[{event.channel_id}] Event queue full, dropping {event.kind} event")


class LoggingListener(ChannelListener):
    """把捕获的行和事件写入日志（命令行模式使用）"""

    def on_data(self, channel_id, line, frames):
        glyph = "▶" if line.is_outbound else "◀"
        log.info(f"[{channel_id}] {glyph} {line.data}")
        for frame in frames:
            log.info(f"[{channel_id}]   {frame.display}")

    def on_status(self, channel_id, state, config):
        log.info(f"[{channel_id}] Status: {state}")

    def on_error(self, channel_id, message):
        log.error(f"[{channel_id}] {message}")

    def on_ports_updated(self, ports):
        log.info(f"Ports: {', '.join(p['device'] for p in ports) or '(none)'}")
