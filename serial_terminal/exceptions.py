"""
异常定义

每种失败只影响一个通道或一次调用：
- TransportOpenError: 打开失败，通道不注册
- TransportReadError: 读失败，读循环退出，通道保持注册
- TransportWriteError: 写失败，通道保持连接
- DecoderError: 解码失败，按"无帧"处理
- FilterSyntaxError: 导出过滤表达式错误，整个导出失败
- EncodingError: 发送内容 (hex/bin) 格式错误，本次发送失败
"""


class SerialTerminalError(Exception):
    """Base exception for serial_terminal"""
    pass


class TransportError(SerialTerminalError):
    """Base exception for transport layer errors"""
    pass


class TransportOpenError(TransportError):
    """Port could not be opened or configured"""
    pass


class TransportReadError(TransportError):
    """Read from an open port failed"""
    pass


class TransportWriteError(TransportError):
    """Write to an open port failed"""
    pass


class DecoderError(SerialTerminalError):
    """Decoder plugin failed on a chunk"""
    pass


class FilterSyntaxError(SerialTerminalError):
    """Export filter regex is malformed"""
    pass


class EncodingError(SerialTerminalError):
    """Send payload could not be encoded for the selected mode"""
    pass
