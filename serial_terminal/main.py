#!/usr/bin/env python3
"""
Serial Terminal

打开命令行或 Redis 中配置的多个串口通道，把捕获的行写入日志，
退出时可按格式导出每个通道的历史。
"""

import os
import sys
import asyncio
import argparse
import signal
import logging
from typing import List, Optional, Tuple

from .constants import VERBOSE_ENV
from .db_util import DbUtil
from .events import LoggingListener
from .export import export_filename
from .manager import ChannelManager
from .plugins import default_registry
from .transport import SerialConfig
from .util import list_serial_ports

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%H:%M:%S'
)
log = logging.getLogger(__name__)


def parse_channel_arg(value: str) -> Tuple[str, SerialConfig]:
    """
    解析 --channel 参数

    格式: id=<ID>,device=<PATH>[,baud_rate=<N>][,decoder=<NAME>]...
    例如: id=plc,device=/dev/ttyUSB0,baud_rate=9600,decoder=Modbus RTU
    """
    fields = {}
    for item in value.split(","):
        if not item.strip():
            continue
        key, sep, val = item.partition("=")
        if not sep:
            raise argparse.ArgumentTypeError(f"Expected key=value, got '{item}'")
        fields[key.strip()] = val.strip()

    channel_id = fields.pop("id", "") or fields.get("device", "")
    try:
        config = SerialConfig.from_dict(fields)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    return channel_id, config


def export_histories(manager: ChannelManager, directory: str, fmt: str,
                     filter_text: Optional[str]) -> List[str]:
    """把每个通道的历史导出到目录，返回写入的文件路径"""
    os.makedirs(directory, exist_ok=True)
    written = []
    for channel_id in manager.history:
        content, _ = manager.export(channel_id, fmt, filter_text)
        path = os.path.join(directory, export_filename(channel_id, fmt))
        with open(path, "wb") as f:
            f.write(content)
        log.info(f"[{channel_id}] Exported {path}")
        written.append(path)
    return written


async def main(args: argparse.Namespace) -> int:
    db = DbUtil(host=args.redis_host, port=args.redis_port) if args.redis else None
    manager = ChannelManager(db=db)
    manager.add_listener(LoggingListener())

    loop = asyncio.get_running_loop()

    def signal_handler():
        log.info("Received shutdown signal")
        manager.running = False

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await manager.start()
        for channel_id, config in args.channel:
            await manager.connect(channel_id, config)
        await manager.run()
    finally:
        await manager.stop()
        if args.export:
            export_histories(manager, args.export, args.format, args.filter)

    return 0


def run():
    """Entry point for the serial-terminal console script"""
    parser = argparse.ArgumentParser(description='Multi-channel serial terminal')
    parser.add_argument('-c', '--channel', action='append', default=[], type=parse_channel_arg,
                        metavar='id=ID,device=PATH[,key=value...]',
                        help='Open a channel (repeatable)')
    parser.add_argument('--redis', action='store_true',
                        help='Load channel configs from Redis and publish channel state')
    parser.add_argument('--redis-host', default='localhost')
    parser.add_argument('--redis-port', type=int, default=6379)
    parser.add_argument('--list-ports', action='store_true', help='List serial ports and exit')
    parser.add_argument('--list-decoders', action='store_true', help='List decoders and exit')
    parser.add_argument('--export', metavar='DIR', help='Export channel histories on exit')
    parser.add_argument('--format', choices=('txt', 'csv', 'json'), default='txt')
    parser.add_argument('--filter', help="Export filter ('#' prefix for regex)")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Enable verbose output (binary data logging)')
    args = parser.parse_args()

    # 如果启用verbose，设置环境变量
    if args.verbose:
        os.environ[VERBOSE_ENV] = 'True'
        logging.getLogger().setLevel(logging.DEBUG)

    if args.list_ports:
        for port in list_serial_ports():
            print(f"{port['id']}\t{port['device']}")
        return
    if args.list_decoders:
        for info in default_registry().describe():
            print(f"{info['name']}\t{info['description']}")
        return

    if not args.channel and not args.redis:
        parser.error("no channels: use --channel or --redis")

    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    run()
