"""
Serial Terminal Package

多通道串口终端核心：
- 通道管理: 连接、断开、读循环、发送、拔出检测
- 协议解码: 插件接口，内置 SLIP 与 Modbus RTU
- 行切分与导出: 捕获的行按 text / csv / json 导出
"""

from .channel import Channel, ChannelState
from .events import ChannelEvent, ChannelListener, LoggingListener, QueueListener
from .exceptions import (
    SerialTerminalError,
    TransportError,
    TransportOpenError,
    TransportReadError,
    TransportWriteError,
    DecoderError,
    FilterSyntaxError,
    EncodingError,
)
from .export import export_lines, export_filename, filter_lines
from .line import CapturedLine, LineSegmenter, DIRECTION_RX, DIRECTION_TX
from .manager import ChannelManager
from .modbus import ModbusRtuDecoder, crc16_modbus, build_rtu_frame
from .plugins import DecodedFrame, DecoderPlugin, DecoderRegistry, default_registry, dispatch
from .slip import SlipDecoder, slip_encode, slip_escape, slip_unescape
from .transport import SerialConfig, SerialTransport, open_transport
from .util import encode_payload, list_serial_ports

__all__ = [
    # 通道
    "Channel",
    "ChannelState",
    "ChannelManager",
    "SerialConfig",
    "SerialTransport",
    "open_transport",

    # 通知
    "ChannelEvent",
    "ChannelListener",
    "LoggingListener",
    "QueueListener",

    # 解码
    "DecodedFrame",
    "DecoderPlugin",
    "DecoderRegistry",
    "default_registry",
    "dispatch",
    "SlipDecoder",
    "slip_encode",
    "slip_escape",
    "slip_unescape",
    "ModbusRtuDecoder",
    "crc16_modbus",
    "build_rtu_frame",

    # 行与导出
    "CapturedLine",
    "LineSegmenter",
    "DIRECTION_RX",
    "DIRECTION_TX",
    "export_lines",
    "export_filename",
    "filter_lines",

    # 工具
    "encode_payload",
    "list_serial_ports",

    # 异常
    "SerialTerminalError",
    "TransportError",
    "TransportOpenError",
    "TransportReadError",
    "TransportWriteError",
    "DecoderError",
    "FilterSyntaxError",
    "EncodingError",
]
