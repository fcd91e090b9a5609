#!/usr/bin/env python3
"""
Modbus RTU Decoder

帧格式:
+---------+----------+-----------+-------------+
| Address | Function |  Payload  | CRC16 (LE)  |
+---------+----------+-----------+-------------+
|   1B    |    1B    |    N B    |     2B      |
+---------+----------+-----------+-------------+

- Function 最高位置位表示异常响应，低 7 位为原功能码
- CRC 不匹配不算解析失败，通过 crcValid 字段报告
- 未识别的功能码（非异常）不产生帧，交给其他解码器或原始文本处理
"""

from typing import Optional

from .plugins import DecodedFrame, DecoderPlugin


PROTOCOL_NAME = "Modbus RTU"

# Address(1) + Function(1) + CRC(2)
MIN_FRAME_LEN = 4

EXCEPTION_FLAG = 0x80

FUNCTION_NAMES = {
    0x01: "Read Coils",
    0x02: "Read Discrete Inputs",
    0x03: "Read Holding Registers",
    0x04: "Read Input Registers",
    0x05: "Write Single Coil",
    0x06: "Write Single Register",
    0x0F: "Write Multiple Coils",
    0x10: "Write Multiple Registers",
    0x17: "Read/Write Multiple Registers",
}


# ============================================================
# CRC16 计算
# ============================================================

def crc16_modbus(data: bytes) -> int:
    """
    CRC-16/MODBUS 算法

    多项式: 0x8005
    初始值: 0xFFFF
    反射输入/输出: True
    """
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001  # 0x8005 reflected
            else:
                crc >>= 1
    return crc


def build_rtu_frame(address: int, function: int, payload: bytes = b"") -> bytes:
    """构造 RTU 帧，追加小端序 CRC16"""
    content = bytes([address & 0xFF, function & 0xFF]) + payload
    crc = crc16_modbus(content)
    return content + bytes([crc & 0xFF, crc >> 8])


# ============================================================
# ModbusRtuDecoder
# ============================================================

class ModbusRtuDecoder(DecoderPlugin):
    """Modbus RTU 帧解码插件"""

    name = PROTOCOL_NAME
    description = "Decodes Modbus RTU protocol frames (function codes, addresses, CRC)"

    def decode(self, data: bytes) -> Optional[DecodedFrame]:
        if len(data) < MIN_FRAME_LEN:
            return None

        address = data[0]
        function = data[1]

        crc_received = data[-2] | (data[-1] << 8)
        crc_valid = crc16_modbus(data[:-2]) == crc_received

        is_exception = bool(function & EXCEPTION_FLAG)
        base_function = function & 0x7F if is_exception else function
        base_name = FUNCTION_NAMES.get(base_function)

        if base_name is None and not is_exception:
            return None

        if is_exception:
            function_name = f"Exception ({base_name or 'Unknown'})"
        else:
            function_name = base_name

        payload = bytes(data[2:-2])

        display = (
            f"[Modbus] Slave:{address} "
            f"Func:{base_name or f'0x{base_function:x}'} "
            f"{'EXCEPTION ' if is_exception else ''}"
            f"CRC:{'OK' if crc_valid else 'FAIL'}"
        )

        return DecodedFrame(
            protocol=PROTOCOL_NAME,
            fields={
                "slaveAddress": address,
                "functionCode": f"0x{function:02x}",
                "functionName": function_name,
                "isException": is_exception,
                "payload": payload.hex(),
                "payloadLength": len(payload),
                "crcReceived": f"0x{crc_received:04x}",
                "crcValid": crc_valid,
            },
            display=display,
        )
