#!/usr/bin/env python3
"""
SLIP Decoder (RFC 1055)

帧格式:
+-----+----------------------+-----+
| END |   转义后的数据 N B    | END |
+-----+----------------------+-----+

特殊字符:
- END (0xC0): 帧边界
- ESC (0xDB): 转义字符

转义规则 (帧内容中):
- 0xC0 -> 0xDB 0xDC
- 0xDB -> 0xDB 0xDD

解码器只处理单个数据块，不跨数据块重组帧:
- 从第一个 END 开始，到下一个 END 或数据块末尾为止
"""

from enum import IntEnum
from typing import Optional

from .plugins import DecodedFrame, DecoderPlugin


# ============================================================
# 常量定义
# ============================================================

class SlipChar(IntEnum):
    """特殊字符定义"""
    END = 0xC0
    ESC = 0xDB
    ESC_END = 0xDC
    ESC_ESC = 0xDD


PROTOCOL_NAME = "SLIP"


# ============================================================
# 转义处理
# ============================================================

def slip_escape(data: bytes) -> bytes:
    """
    对数据进行转义

    0xC0 (END) -> 0xDB 0xDC
    0xDB (ESC) -> 0xDB 0xDD
    """
    result = bytearray()
    for byte in data:
        if byte == SlipChar.END:
            result += bytes([SlipChar.ESC, SlipChar.ESC_END])
        elif byte == SlipChar.ESC:
            result += bytes([SlipChar.ESC, SlipChar.ESC_ESC])
        else:
            result.append(byte)
    return bytes(result)


def slip_unescape(data: bytes) -> bytes:
    """
    对数据进行去转义

    0xDB 0xDC -> 0xC0
    0xDB 0xDD -> 0xDB
    0xDB 其他  -> 其他 (宽松处理)
    末尾单独的 0xDB 被丢弃
    """
    result = bytearray()
    i = 0
    while i < len(data):
        if data[i] == SlipChar.ESC:
            i += 1
            if i >= len(data):
                break
            if data[i] == SlipChar.ESC_END:
                result.append(SlipChar.END)
            elif data[i] == SlipChar.ESC_ESC:
                result.append(SlipChar.ESC)
            else:
                result.append(data[i])
        else:
            result.append(data[i])
        i += 1
    return bytes(result)


def slip_encode(data: bytes) -> bytes:
    """构建完整的 SLIP 帧: END + 转义数据 + END"""
    return bytes([SlipChar.END]) + slip_escape(data) + bytes([SlipChar.END])


def to_printable_ascii(data: bytes) -> str:
    """可打印 ASCII 字符保留，其余替换为 '.'"""
    return "".join(chr(b) if 0x20 <= b <= 0x7E else "." for b in data)


# ============================================================
# SlipDecoder
# ============================================================

class SlipDecoder(DecoderPlugin):
    """SLIP 帧解码插件"""

    name = PROTOCOL_NAME
    description = "Decodes SLIP (Serial Line Internet Protocol, RFC 1055) frames"

    def decode(self, data: bytes) -> Optional[DecodedFrame]:
        """
        从数据块解析 SLIP 帧

        流程:
        1. 查找第一个 END，没有则不是帧
        2. 查找下一个 END，没有则取到数据块末尾
        3. 帧体为空则不是帧
        4. 去转义并生成字段

        Returns:
            解析成功返回 DecodedFrame，否则返回 None
        """
        start = data.find(SlipChar.END)
        if start == -1:
            return None

        end = data.find(SlipChar.END, start + 1)
        if end == -1:
            end = len(data)

        encoded = bytes(data[start + 1:end])
        if not encoded:
            return None

        decoded = slip_unescape(encoded)

        return DecodedFrame(
            protocol=PROTOCOL_NAME,
            fields={
                "encodedLength": len(encoded),
                "decodedLength": len(decoded),
                "decodedHex": decoded.hex(),
                "decodedAscii": to_printable_ascii(decoded),
                "escapedBytes": len(encoded) - len(decoded),
            },
            display=f"[SLIP] {len(decoded)} bytes decoded ({len(encoded)} encoded)",
        )
