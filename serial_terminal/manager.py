#!/usr/bin/env python3
"""
通道管理

ChannelManager 是唯一的跨任务共享结构：
- connect/disconnect 按通道 id 加锁串行化，同一 id 最多一个活动连接
- 每个通道的读循环是独立的 asyncio 任务
- 捕获的行保存在每个通道的历史记录中，断开后仍保留，供导出使用
- 可选：从 Redis 读取通道配置并同步，把通道状态写入 STATE_DB
"""

import asyncio
import contextlib
import logging
import os
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from .channel import Channel, ChannelState
from .constants import MAX_HISTORY_LINES, PORT_POLL_INTERVAL, VERBOSE_ENV
from .db_util import DbUtil
from .events import ChannelListener
from .exceptions import EncodingError, TransportOpenError, TransportWriteError
from .export import export_lines
from .line import DIRECTION_TX, CapturedLine, now_ms
from .plugins import DecodedFrame, DecoderRegistry, default_registry
from .transport import SerialConfig, open_transport
from .util import encode_payload, list_serial_ports

log = logging.getLogger(__name__)


TransportFactory = Callable[[SerialConfig], Any]


class ChannelManager:
    def __init__(self, registry: Optional[DecoderRegistry] = None,
                 transport_factory: TransportFactory = open_transport,
                 db: Optional[DbUtil] = None,
                 history_size: int = MAX_HISTORY_LINES):
        self.registry = registry if registry is not None else default_registry()
        self.transport_factory = transport_factory
        self.db = db
        self.history_size = history_size

        self.channels: Dict[str, Channel] = {}
        self.history: Dict[str, Deque[CapturedLine]] = {}
        self.listeners: List[ChannelListener] = []
        self.ports: List[Dict[str, str]] = []
        self.running: bool = False
        self.verbose = os.environ.get(VERBOSE_ENV, "").lower() in ("1", "true", "yes")

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._requested_ports: Set[str] = set()
        self._db_managed: Dict[str, SerialConfig] = {}
        self._background: Set[asyncio.Task] = set()

    # ============================================================
    # 监听器
    # ============================================================

    def add_listener(self, listener: ChannelListener) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener: ChannelListener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    # ============================================================
    # 连接管理
    # ============================================================

    async def connect(self, channel_id: str, config: SerialConfig) -> bool:
        """
        连接通道

        已注册的通道先断开；打开失败时报告错误，通道不注册。

        Returns:
            连接成功返回 True
        """
        async with self._channel_lock(channel_id):
            if channel_id in self.channels:
                await self._disconnect_locked(channel_id)

            self._emit_status(channel_id, ChannelState.CONNECTING, None)

            try:
                if config.decoder and config.decoder not in self.registry:
                    log.warning(f"[{channel_id}] Unknown decoder '{config.decoder}', frames disabled")
                transport = self.transport_factory(config)
            except (TransportOpenError, ValueError) as e:
                log.error(f"[{channel_id}] Connect failed: {e}")
                self._emit_error(channel_id, str(e))
                self._emit_status(channel_id, ChannelState.DISCONNECTED, None)
                return False

            channel = Channel(
                channel_id, config, transport, self.registry,
                on_data=self._on_channel_data,
                on_state=self._on_channel_state,
                on_error=self._emit_error,
                verbose=self.verbose,
            )
            self.channels[channel_id] = channel
            self.history.setdefault(channel_id, deque(maxlen=self.history_size))
            channel.start()
            return True

    async def disconnect(self, channel_id: str) -> bool:
        """断开通道，未注册的 id 直接返回 True"""
        if channel_id not in self.channels:
            return True
        async with self._channel_lock(channel_id):
            await self._disconnect_locked(channel_id)
        return True

    async def _disconnect_locked(self, channel_id: str) -> None:
        channel = self.channels.get(channel_id)
        if channel is None:
            return
        try:
            await channel.stop()
        finally:
            # 无论关闭是否成功都从注册表移除
            self.channels.pop(channel_id, None)
            log.info(f"[{channel_id}] Removed")

    def find_channel_for_transport(self, transport: Any) -> Optional[str]:
        """按句柄身份查找通道 id"""
        for channel_id, channel in self.channels.items():
            if channel.transport is transport:
                return channel_id
        return None

    async def handle_unplug(self, transport: Any) -> Optional[str]:
        """硬件拔出：找到对应通道并断开"""
        channel_id = self.find_channel_for_transport(transport)
        if channel_id is not None:
            log.warning(f"[{channel_id}] Device unplugged: {getattr(transport, 'device', '?')}")
            await self.disconnect(channel_id)
            self._update_port_list()
        return channel_id

    def set_decoder(self, channel_id: str, name: Optional[str]) -> None:
        """切换通道的解码器，None 表示不解码"""
        if name and name not in self.registry:
            raise KeyError(f"Unknown decoder '{name}'")
        channel = self.channels[channel_id]
        channel.decoder = name or None
        log.info(f"[{channel_id}] Decoder: {channel.decoder or 'none'}")

    # ============================================================
    # 发送
    # ============================================================

    async def send(self, channel_id: str, payload: str, mode: str = "ascii") -> bool:
        """
        发送数据

        Args:
            payload: 用户输入
            mode: ascii / hex / bin

        Returns:
            发送成功返回 True；未连接、编码错误、写失败时报告错误并返回 False
        """
        channel = self.channels.get(channel_id)
        if channel is None or channel.state in (ChannelState.DISCONNECTING, ChannelState.DISCONNECTED):
            self._emit_error(channel_id, "Port is not writable or not connected.")
            return False

        try:
            data = encode_payload(payload, mode)
        except EncodingError as e:
            self._emit_error(channel_id, str(e))
            return False

        async with channel.write_lock:
            try:
                await channel.transport.write(data)
            except (TransportWriteError, OSError) as e:
                log.error(f"[{channel_id}] Write failed: {e}")
                self._emit_error(channel_id, f"Failed to write: {e}")
                return False

        if self.verbose:
            log.debug(f"[{channel_id}] TX {len(data)}B: {data.hex(' ').upper()}")

        line = CapturedLine(
            timestamp=now_ms(),
            direction=DIRECTION_TX,
            data=payload if mode not in ("hex", "bin") else f"[{mode.upper()}] {payload}",
            raw=list(data),
        )
        self._on_channel_data(channel_id, line, [])
        return True

    # ============================================================
    # 状态与历史
    # ============================================================

    def status(self, channel_id: str) -> Dict[str, Any]:
        channel = self.channels.get(channel_id)
        if channel is None:
            return {
                "channel_id": channel_id,
                "state": ChannelState.DISCONNECTED.value,
                "config": None,
                "decoder": None,
            }
        return channel.status()

    def get_buffer(self, channel_id: str) -> List[CapturedLine]:
        """返回通道历史的快照"""
        return list(self.history.get(channel_id, ()))

    def clear_buffer(self, channel_id: str) -> None:
        if channel_id in self.history:
            self.history[channel_id].clear()

    def export(self, channel_id: str, fmt: str = "txt", filter_text: Optional[str] = None,
               start_time: Optional[int] = None, end_time: Optional[int] = None) -> Tuple[bytes, str]:
        """导出通道历史，过滤表达式错误时抛出 FilterSyntaxError"""
        return export_lines(self.get_buffer(channel_id), fmt, filter_text, start_time, end_time)

    # ============================================================
    # 端口发现
    # ============================================================

    def list_ports(self) -> List[Dict[str, str]]:
        return list_serial_ports(extra=self._requested_ports)

    async def request_port(self, device: str) -> bool:
        """加入一个不在自动发现范围内的设备（如 PTY）"""
        if not os.path.exists(device):
            log.warning(f"Requested port not found: {device}")
            return False
        self._requested_ports.add(device)
        await self.refresh_ports()
        return True

    async def refresh_ports(self) -> None:
        """刷新端口列表，检测已拔出的设备"""
        self._update_port_list()

        for channel in list(self.channels.values()):
            if not channel.transport.is_present():
                await self.handle_unplug(channel.transport)

    def _update_port_list(self) -> None:
        ports = self.list_ports()
        if ports != self.ports:
            self.ports = ports
            self._emit_ports(ports)

    # ============================================================
    # 生命周期
    # ============================================================

    async def start(self) -> None:
        if self.db:
            await self.db.connect()
            await self.sync()
            await self.db.subscribe_config_changes()

        await self.refresh_ports()
        self.running = True

    async def run(self) -> None:
        """主循环：处理 Redis 配置事件，轮询端口"""
        while self.running:
            if self.db:
                msg = await self.db.get_config_event()
                if msg:
                    log.info(f"Redis event: {msg.get('data')} on {msg.get('channel')}")
                    await self.sync()
            else:
                await asyncio.sleep(PORT_POLL_INTERVAL)

            if self.running:
                await self.refresh_ports()

    async def sync(self) -> None:
        """同步 Redis 通道配置和实际通道，只影响由 Redis 管理的通道"""
        if not self.db:
            return

        configs: Dict[str, SerialConfig] = {}
        for channel_id, data in (await self.db.get_all_configs()).items():
            try:
                configs[channel_id] = SerialConfig.from_dict(data)
            except ValueError as e:
                log.error(f"[{channel_id}] Invalid config in Redis: {e}")

        # 删除不在 Redis 中的通道
        for channel_id in set(self._db_managed) - set(configs):
            del self._db_managed[channel_id]
            await self.disconnect(channel_id)

        # 添加新通道，重连配置变化的通道
        for channel_id, config in configs.items():
            if self._db_managed.get(channel_id) == config and channel_id in self.channels:
                continue
            self._db_managed[channel_id] = config
            await self.connect(channel_id, config)

        log.info(f"Sync complete: {len(self.channels)} channels active")

    async def stop(self) -> None:
        self.running = False

        # 并发等待所有通道停止
        if self.channels:
            await asyncio.gather(
                *[self.disconnect(channel_id) for channel_id in list(self.channels)],
                return_exceptions=True
            )

        self.channels.clear()

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        if self.db:
            await self.db.close()

        log.info("Shutdown complete")

    # ============================================================
    # 通知
    # ============================================================

    def _on_channel_data(self, channel_id: str, line: CapturedLine, frames: List[DecodedFrame]) -> None:
        history = self.history.setdefault(channel_id, deque(maxlen=self.history_size))
        history.append(line)
        self._notify("on_data", channel_id, line, frames)

    def _on_channel_state(self, channel_id: str, state: ChannelState) -> None:
        channel = self.channels.get(channel_id)
        config = channel.config.to_dict() if channel is not None else None
        self._emit_status(channel_id, state, config)

    def _emit_status(self, channel_id: str, state: ChannelState, config: Optional[Dict[str, Any]]) -> None:
        self._notify("on_status", channel_id, state.value, config)
        if self.db:
            if state == ChannelState.DISCONNECTED:
                self._spawn(self.db.cleanup_state(channel_id))
            else:
                self._spawn(self.db.update_state(channel_id, state.value, config))

    def _emit_error(self, channel_id: str, message: str) -> None:
        self._notify("on_error", channel_id, message)

    def _emit_ports(self, ports: List[Dict[str, str]]) -> None:
        self._notify("on_ports_updated", ports)

    def _notify(self, method: str, *args: Any) -> None:
        for listener in list(self.listeners):
            try:
                getattr(listener, method)(*args)
            except Exception as e:
                log.error(f"Listener {listener!r} failed in {method}: {e}", exc_info=True)

    def _spawn(self, coro) -> None:
        """fire-and-forget 任务，保留引用直到完成"""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @contextlib.asynccontextmanager
    async def _channel_lock(self, channel_id: str):
        """按通道 id 加锁；没有等待者时释放锁对象"""
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = self._locks[channel_id] = asyncio.Lock()
        self._lock_users[channel_id] = self._lock_users.get(channel_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[channel_id] -= 1
            if self._lock_users[channel_id] == 0:
                del self._lock_users[channel_id]
                del self._locks[channel_id]
