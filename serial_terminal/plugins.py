"""
解码插件接口

定义解码结果 DecodedFrame、插件基类 DecoderPlugin、按名称查找插件的
DecoderRegistry，以及读循环使用的 dispatch()。

插件约定:
- decode(data): 对单个数据块解码，返回 DecodedFrame 或 None
- process_rx(data): 返回帧列表，默认包装一次 decode()
- 插件是同步、无状态的，不跨数据块重组帧
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from .exceptions import DecoderError

log = logging.getLogger(__name__)


# ============================================================
# DecodedFrame
# ============================================================

@dataclass(frozen=True)
class DecodedFrame:
    """
    解码结果

    fields 保持插入顺序，构造后只读。
    """
    protocol: str
    fields: Mapping[str, Any] = field(default_factory=dict)
    display: str = ""

    def __post_init__(self):
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def __hash__(self):
        return hash((self.protocol, tuple(self.fields.items()), self.display))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "fields": dict(self.fields),
            "display": self.display,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'DecodedFrame':
        return cls(
            protocol=data["protocol"],
            fields=data.get("fields", {}),
            display=data.get("display", ""),
        )


# ============================================================
# 插件基类
# ============================================================

class DecoderPlugin(ABC):
    """解码插件基类"""

    name: str = ""
    description: str = ""

    @abstractmethod
    def decode(self, data: bytes) -> Optional[DecodedFrame]:
        """尝试将一个数据块解码为帧"""

    def process_rx(self, data: bytes) -> List[DecodedFrame]:
        """处理接收到的数据块，返回解码出的帧列表"""
        frame = self.decode(data)
        return [frame] if frame is not None else []


# ============================================================
# 插件注册表
# ============================================================

class DecoderRegistry:
    """名称 -> 插件 映射，在分发时查询"""

    def __init__(self):
        self._plugins: Dict[str, DecoderPlugin] = {}

    def register(self, plugin: DecoderPlugin, replace: bool = False) -> None:
        if not plugin.name:
            raise DecoderError(f"Decoder {plugin!r} has no name")
        if plugin.name in self._plugins and not replace:
            raise DecoderError(f"Decoder '{plugin.name}' is already registered")
        self._plugins[plugin.name] = plugin
        log.info(f"Registered decoder: {plugin.name}")

    def unregister(self, name: str) -> None:
        self._plugins.pop(name, None)

    def get(self, name: Optional[str]) -> Optional[DecoderPlugin]:
        if not name:
            return None
        return self._plugins.get(name)

    def names(self) -> List[str]:
        return list(self._plugins)

    def describe(self) -> List[Dict[str, str]]:
        return [
            {"name": p.name, "description": p.description}
            for p in self._plugins.values()
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._plugins

    def __len__(self) -> int:
        return len(self._plugins)


def default_registry() -> DecoderRegistry:
    """创建包含内置解码器 (SLIP, Modbus RTU) 的注册表"""
    from .modbus import ModbusRtuDecoder
    from .slip import SlipDecoder

    registry = DecoderRegistry()
    registry.register(SlipDecoder())
    registry.register(ModbusRtuDecoder())
    return registry


# ============================================================
# 分发
# ============================================================

def dispatch(registry: DecoderRegistry, name: Optional[str], data: bytes) -> List[DecodedFrame]:
    """
    用通道选择的解码器处理一个数据块

    插件抛出的异常在这里被捕获并记录，按"无帧"处理，不会中断数据块的后续处理。
    """
    plugin = registry.get(name)
    if plugin is None:
        return []
    try:
        return list(plugin.process_rx(data))
    except Exception as e:
        log.error(f"Decoder '{name}' failed on {len(data)} bytes: {e}", exc_info=True)
        return []
