"""
测试公共工具: 假串口句柄与事件记录器
"""

import asyncio
import os
import sys

import pytest

# 添加项目根目录到 Python 路径
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from serial_terminal.events import ChannelListener  # noqa: E402


class FakeTransport:
    """
    假串口句柄

    read() 从队列取数据块；队列中放入异常时抛出该异常，放入 None 表示 EOF。
    必须在事件循环内创建。
    """

    def __init__(self, config=None):
        self.config = config
        self.device = config.device if config is not None else "/dev/fake"
        self.chunks: asyncio.Queue = asyncio.Queue()
        self.written = []
        self.closed = False
        self.present = True
        self.close_error = None
        self.write_error = None
        self.cancel_calls = 0
        self.reads = 0

    def feed(self, item) -> None:
        self.chunks.put_nowait(item)

    async def read(self):
        item = await self.chunks.get()
        self.reads += 1
        if isinstance(item, BaseException):
            raise item
        return item

    def cancel_read(self) -> None:
        self.cancel_calls += 1

    async def write(self, data: bytes) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.written.append(bytes(data))

    def close(self) -> None:
        self.closed = True
        if self.close_error is not None:
            raise self.close_error

    def is_present(self) -> bool:
        return self.present


class RecordingListener(ChannelListener):
    """记录所有通知"""

    def __init__(self):
        self.data = []
        self.status = []
        self.errors = []
        self.ports = []

    def on_data(self, channel_id, line, frames):
        self.data.append((channel_id, line, list(frames)))

    def on_status(self, channel_id, state, config):
        self.status.append((channel_id, state))

    def on_error(self, channel_id, message):
        self.errors.append((channel_id, message))

    def on_ports_updated(self, ports):
        self.ports.append(ports)

    def lines(self, channel_id):
        return [line for cid, line, _ in self.data if cid == channel_id]

    def states(self, channel_id):
        return [state for cid, state in self.status if cid == channel_id]


async def settle(rounds: int = 10) -> None:
    """让出事件循环若干次，让读循环处理完队列中的数据"""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def listener():
    return RecordingListener()
