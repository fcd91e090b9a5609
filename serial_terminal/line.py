"""
Captured Line 与行切分器

LineSegmenter 把一个通道的数据块切分成按换行分隔的行，通过回调交给外部处理。
每个通道拥有自己的 LineSegmenter，待处理文本从不在通道之间共享。
"""

import codecs
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .constants import MAX_LINE_BUFFER
from .plugins import DecodedFrame

log = logging.getLogger(__name__)


DIRECTION_TX = "tx"   # outbound
DIRECTION_RX = "rx"   # inbound


def now_ms() -> int:
    """当前时间戳（毫秒）"""
    return int(time.time() * 1000)


# ============================================================
# CapturedLine
# ============================================================

@dataclass
class CapturedLine:
    """一行带时间戳和方向的文本，用于显示和导出"""
    timestamp: int
    direction: str
    data: str
    raw: List[int] = field(default_factory=list)
    frames: List[DecodedFrame] = field(default_factory=list)

    @property
    def is_outbound(self) -> bool:
        return self.direction == DIRECTION_TX

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "direction": self.direction,
            "data": self.data,
            "raw": list(self.raw),
            "frames": [f.to_dict() for f in self.frames],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'CapturedLine':
        return cls(
            timestamp=data["timestamp"],
            direction=data["direction"],
            data=data.get("data", ""),
            raw=list(data.get("raw", [])),
            frames=[DecodedFrame.from_dict(f) for f in data.get("frames", [])],
        )


# ============================================================
# LineSegmenter
# ============================================================

# 回调函数类型
LineCallback = Callable[[CapturedLine], None]


class LineSegmenter:
    """
    行切分器

    职责:
    1. 将数据块按 UTF-8 宽松解码（非法字节替换，不会失败）后追加到 buffer
    2. 从 buffer 中提取以 '\\n' 结尾的行，去掉一个行尾 '\\r'
    3. 通过回调把每一行交给外部处理

    帧归属规则:
    - 一个数据块解码出的帧只附加到该数据块提取出的第一行
    - 同一数据块后续的行不带帧

    溢出保护:
    - 提取完行后 buffer 仍超过 max_buffer 个字符时，整个 buffer 作为一行输出
      （带上尚未附加的帧），然后清空
    """

    def __init__(
        self,
        on_line: Optional[LineCallback] = None,
        max_buffer: int = MAX_LINE_BUFFER,
        clock: Callable[[], int] = now_ms,
    ):
        self._on_line = on_line
        self._max_buffer = max_buffer
        self._clock = clock
        self._buffer = ""
        # 多字节字符可能跨数据块，用增量解码器保留不完整的尾部
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def process(self, data: bytes, frames: Sequence[DecodedFrame] = ()) -> List[CapturedLine]:
        """
        处理一个数据块

        Args:
            data: 原始字节
            frames: 解码器为该数据块产生的帧

        Returns:
            本次提取出的行
        """
        pending = list(frames)
        lines: List[CapturedLine] = []

        self._buffer += self._decoder.decode(data)

        while True:
            idx = self._buffer.find("\n")
            if idx == -1:
                break
            text = self._buffer[:idx]
            if text.endswith("\r"):
                text = text[:-1]
            self._buffer = self._buffer[idx + 1:]

            lines.append(self._emit(text, pending))
            pending = []

        if len(self._buffer) > self._max_buffer:
            log.debug(f"Line buffer overflow ({len(self._buffer)} chars), force flush")
            text = self._buffer
            self._buffer = ""
            lines.append(self._emit(text, pending))
            pending = []

        if pending:
            log.debug(f"{len(pending)} frame(s) not attached to any line")

        return lines

    def flush(self) -> str:
        """
        刷新 buffer，返回剩余文本

        Returns:
            buffer 中的剩余文本
        """
        result = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        self._decoder.reset()
        return result

    def has_pending_data(self) -> bool:
        """检查是否有待处理的文本"""
        return len(self._buffer) > 0

    @property
    def pending_text(self) -> str:
        return self._buffer

    def _emit(self, text: str, frames: List[DecodedFrame]) -> CapturedLine:
        line = CapturedLine(
            timestamp=self._clock(),
            direction=DIRECTION_RX,
            data=text,
            frames=frames,
        )
        if self._on_line:
            self._on_line(line)
        return line
