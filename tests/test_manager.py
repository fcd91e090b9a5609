#!/usr/bin/env python3
"""
ChannelManager 单元测试 (pytest)
"""

import sys
import os
import asyncio
import logging
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

# 添加项目根目录到 Python 路径
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from serial_terminal.channel import ChannelState
from serial_terminal.events import ChannelListener
from serial_terminal.exceptions import FilterSyntaxError, TransportOpenError, TransportWriteError
from serial_terminal.line import DIRECTION_RX, DIRECTION_TX
from serial_terminal.manager import ChannelManager
from serial_terminal.transport import SerialConfig

from conftest import FakeTransport, settle


class TransportFactory:
    """记录创建的 FakeTransport；fail 中的设备打开失败"""

    def __init__(self):
        self.created = []
        self.fail = set()

    def __call__(self, config):
        if config.device in self.fail:
            raise TransportOpenError(f"Failed to open {config.device}: [Errno 2] No such file or directory")
        transport = FakeTransport(config)
        self.created.append(transport)
        return transport


@pytest.fixture
def factory():
    return TransportFactory()


@pytest.fixture
def manager(factory, listener):
    manager = ChannelManager(transport_factory=factory)
    manager.add_listener(listener)
    return manager


def make_db(configs=None):
    """创建 Mock DbUtil"""
    db = MagicMock()
    db.connect = AsyncMock()
    db.close = AsyncMock()
    db.subscribe_config_changes = AsyncMock()
    db.get_all_configs = AsyncMock(return_value=configs or {})
    db.get_config_event = AsyncMock(return_value=None)
    db.update_state = AsyncMock()
    db.cleanup_state = AsyncMock()
    return db


# ============================================================
# 连接/断开测试
# ============================================================

class TestConnect:
    """连接/断开测试"""

    @pytest.mark.asyncio
    async def test_connect_success(self, manager, factory, listener):
        """测试连接成功后通道注册，状态 connecting -> connected"""
        assert await manager.connect("a", SerialConfig("/dev/ttyUSB0")) is True

        assert "a" in manager.channels
        assert manager.channels["a"].transport is factory.created[0]
        assert listener.states("a") == ["connecting", "connected"]
        assert manager.status("a")["state"] == "connected"
        await manager.stop()

    @pytest.mark.asyncio
    async def test_connect_failure_not_registered(self, manager, factory, listener):
        """测试打开失败时报告错误，通道不注册"""
        factory.fail.add("/dev/ttyUSB9")

        assert await manager.connect("a", SerialConfig("/dev/ttyUSB9")) is False

        assert "a" not in manager.channels
        assert len(listener.errors) == 1
        assert "ttyUSB9" in listener.errors[0][1]
        assert listener.states("a") == ["connecting", "disconnected"]

    @pytest.mark.asyncio
    async def test_reconnect_closes_previous(self, manager, factory, listener):
        """测试同一 id 再次连接时先断开旧连接"""
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        await manager.connect("a", SerialConfig("/dev/ttyUSB1", baud_rate=9600))

        first, second = factory.created
        assert first.closed
        assert not second.closed
        assert manager.channels["a"].transport is second
        assert listener.states("a") == [
            "connecting", "connected",
            "disconnecting", "disconnected",
            "connecting", "connected",
        ]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_concurrent_connects_same_id(self, manager, factory):
        """测试同一 id 的并发连接串行化，最多一个活动连接"""
        await asyncio.gather(
            manager.connect("a", SerialConfig("/dev/ttyUSB0")),
            manager.connect("a", SerialConfig("/dev/ttyUSB1")),
        )

        assert len(manager.channels) == 1
        open_transports = [t for t in factory.created if not t.closed]
        assert len(open_transports) == 1
        assert manager.channels["a"].transport is open_transports[0]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_locks_released_after_use(self, manager):
        """测试连接/断开结束后不保留按 id 的锁"""
        await asyncio.gather(
            manager.connect("a", SerialConfig("/dev/ttyUSB0")),
            manager.connect("a", SerialConfig("/dev/ttyUSB1")),
            manager.connect("b", SerialConfig("/dev/ttyUSB2")),
        )
        assert manager._locks == {}

        for i in range(5):
            await manager.connect(f"tmp{i}", SerialConfig("/dev/ttyUSB0"))
            await manager.disconnect(f"tmp{i}")

        assert manager._locks == {}
        assert manager._lock_users == {}
        await manager.stop()

    @pytest.mark.asyncio
    async def test_disconnect_unknown_is_noop(self, manager, listener):
        """测试断开未注册的 id 是空操作，不产生通知"""
        assert await manager.disconnect("nope") is True
        assert listener.status == []
        assert listener.errors == []

    @pytest.mark.asyncio
    async def test_disconnect_close_error_still_removed(self, manager, factory, caplog):
        """测试关闭失败时通道仍然从注册表移除"""
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        factory.created[0].close_error = OSError("EIO")

        with caplog.at_level(logging.ERROR):
            assert await manager.disconnect("a") is True

        assert "a" not in manager.channels
        assert "EIO" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_decoder_still_connects(self, manager, caplog):
        """测试未知解码器只记录警告，不影响连接"""
        with caplog.at_level(logging.WARNING):
            assert await manager.connect("a", SerialConfig("/dev/ttyUSB0", decoder="XMODEM"))
        assert "XMODEM" in caplog.text
        await manager.stop()

    @pytest.mark.asyncio
    async def test_status_unregistered(self, manager):
        status = manager.status("ghost")
        assert status["state"] == "disconnected"
        assert status["config"] is None


# ============================================================
# 接收与历史测试
# ============================================================

class TestReceive:
    """接收与历史测试"""

    @pytest.mark.asyncio
    async def test_channels_independent(self, manager, factory, listener):
        """测试两个通道的半行互不影响"""
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        await manager.connect("b", SerialConfig("/dev/ttyUSB1"))
        ta, tb = factory.created

        ta.feed(b"from ")
        tb.feed(b"other ")
        ta.feed(b"a\n")
        tb.feed(b"b\n")
        await settle()

        assert [l.data for l in listener.lines("a")] == ["from a"]
        assert [l.data for l in listener.lines("b")] == ["other b"]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_history_kept_after_disconnect(self, manager, factory):
        """测试断开后历史仍可导出"""
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        factory.created[0].feed(b"ERROR 1\nok\n")
        await settle()
        await manager.disconnect("a")

        content, content_type = manager.export("a", "csv", "#^err")

        assert content_type == "text/csv"
        rows = content.decode("utf-8").split("\n")
        assert len(rows) == 2
        assert rows[1].endswith(',rx,"ERROR 1"')

    @pytest.mark.asyncio
    async def test_export_invalid_filter(self, manager):
        with pytest.raises(FilterSyntaxError):
            manager.export("a", "txt", "#(")

    @pytest.mark.asyncio
    async def test_history_bounded(self, factory):
        """测试历史记录有上限"""
        manager = ChannelManager(transport_factory=factory, history_size=3)
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        factory.created[0].feed(b"1\n2\n3\n4\n5\n")
        await settle()

        assert [l.data for l in manager.get_buffer("a")] == ["3", "4", "5"]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_clear_buffer(self, manager, factory):
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        factory.created[0].feed(b"x\n")
        await settle()

        manager.clear_buffer("a")

        assert manager.get_buffer("a") == []
        await manager.stop()

    @pytest.mark.asyncio
    async def test_set_decoder(self, manager, factory, listener):
        """测试运行时切换解码器"""
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        manager.set_decoder("a", "Modbus RTU")
        factory.created[0].feed(bytes.fromhex("110600010003") + b"\n")
        await settle()

        frames = listener.data[-1][2]
        assert frames[0].protocol == "Modbus RTU"
        assert frames[0].fields["slaveAddress"] == 0x11
        assert frames[0].fields["functionName"] == "Write Single Register"

        with pytest.raises(KeyError):
            manager.set_decoder("a", "Unknown")
        await manager.stop()

    @pytest.mark.asyncio
    async def test_listener_exception_isolated(self, manager, factory, listener, caplog):
        """测试一个监听器抛出异常不影响其他监听器"""
        class Broken(ChannelListener):
            def on_data(self, channel_id, line, frames):
                raise RuntimeError("listener bug")

        manager.listeners.insert(0, Broken())
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        factory.created[0].feed(b"x\n")

        with caplog.at_level(logging.ERROR):
            await settle()

        assert [l.data for l in listener.lines("a")] == ["x"]
        assert "listener bug" in caplog.text
        await manager.stop()


# ============================================================
# 发送测试
# ============================================================

class TestSend:
    """发送测试"""

    @pytest.mark.asyncio
    async def test_send_ascii(self, manager, factory, listener):
        """测试 ascii 发送追加 CRLF 并记录 tx 行"""
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))

        assert await manager.send("a", "AT") is True

        assert factory.created[0].written == [b"AT\r\n"]
        line = manager.get_buffer("a")[-1]
        assert line.direction == DIRECTION_TX
        assert line.data == "AT"
        assert line.raw == [0x41, 0x54, 0x0D, 0x0A]
        assert listener.lines("a")[-1] is line
        await manager.stop()

    @pytest.mark.asyncio
    async def test_send_hex(self, manager, factory):
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))

        assert await manager.send("a", "01 03 00 00 00 0A C5 CD", "hex") is True

        assert factory.created[0].written == [bytes.fromhex("01030000000ac5cd")]
        assert manager.get_buffer("a")[-1].data == "[HEX] 01 03 00 00 00 0A C5 CD"
        await manager.stop()

    @pytest.mark.asyncio
    async def test_send_bin(self, manager, factory):
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))

        assert await manager.send("a", "0100000101", "bin") is True

        assert factory.created[0].written == [b"\x41\x40"]
        assert manager.get_buffer("a")[-1].data == "[BIN] 0100000101"
        await manager.stop()

    @pytest.mark.asyncio
    async def test_send_odd_hex_rejected(self, manager, factory, listener):
        """测试奇数长度 hex 被拒绝，不写入"""
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))

        assert await manager.send("a", "ABC", "hex") is False

        assert factory.created[0].written == []
        assert "odd" in listener.errors[-1][1]
        assert manager.get_buffer("a") == []
        await manager.stop()

    @pytest.mark.asyncio
    async def test_send_write_error(self, manager, factory, listener):
        """测试写失败报告错误，不记录 tx 行"""
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        factory.created[0].write_error = TransportWriteError("Input/output error")

        assert await manager.send("a", "AT") is False

        assert listener.errors[-1] == ("a", "Failed to write: Input/output error")
        assert manager.get_buffer("a") == []
        await manager.stop()

    @pytest.mark.asyncio
    async def test_send_not_connected(self, manager, listener):
        assert await manager.send("ghost", "AT") is False
        assert listener.errors[-1][0] == "ghost"

    @pytest.mark.asyncio
    async def test_tx_and_rx_interleaved_in_history(self, manager, factory):
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        await manager.send("a", "AT")
        factory.created[0].feed(b"OK\n")
        await settle()

        assert [(l.direction, l.data) for l in manager.get_buffer("a")] == [
            (DIRECTION_TX, "AT"), (DIRECTION_RX, "OK"),
        ]
        await manager.stop()


# ============================================================
# 端口与拔出测试
# ============================================================

class TestPorts:
    """端口发现与拔出检测测试"""

    @pytest.mark.asyncio
    async def test_unplug_by_identity(self, manager, factory, listener):
        """测试按句柄身份找到通道并只断开该通道"""
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        await manager.connect("b", SerialConfig("/dev/ttyUSB1"))
        ta, tb = factory.created

        assert await manager.handle_unplug(tb) == "b"

        assert list(manager.channels) == ["a"]
        assert tb.closed
        assert not ta.closed
        assert listener.states("b")[-1] == "disconnected"
        await manager.stop()

    @pytest.mark.asyncio
    async def test_unplug_unknown_transport(self, manager, factory):
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))

        assert await manager.handle_unplug(FakeTransport()) is None

        assert "a" in manager.channels
        await manager.stop()

    @pytest.mark.asyncio
    async def test_refresh_ports_notifies_on_change(self, manager, listener):
        """测试端口列表变化时才通知"""
        ports = [{"id": "port-0", "device": "/dev/ttyUSB0"}]
        with patch('serial_terminal.manager.list_serial_ports', return_value=ports):
            await manager.refresh_ports()
            await manager.refresh_ports()

        assert listener.ports == [ports]
        assert manager.ports == ports

    @pytest.mark.asyncio
    async def test_refresh_ports_detects_unplug(self, manager, factory):
        """测试设备节点消失时断开对应通道"""
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        factory.created[0].present = False

        with patch('serial_terminal.manager.list_serial_ports', return_value=[]):
            await manager.refresh_ports()

        assert "a" not in manager.channels

    @pytest.mark.asyncio
    async def test_request_port(self, manager, tmp_path):
        """测试请求的设备加入端口列表"""
        dev = tmp_path / "pts3"
        dev.touch()

        assert await manager.request_port(str(dev)) is True
        assert str(dev) in [p["device"] for p in manager.ports]

        assert await manager.request_port(str(tmp_path / "missing")) is False


# ============================================================
# 生命周期与 Redis 同步测试
# ============================================================

class TestLifecycle:
    """生命周期与 Redis 同步测试"""

    @pytest.mark.asyncio
    async def test_stop_disconnects_all(self, manager, factory):
        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        await manager.connect("b", SerialConfig("/dev/ttyUSB1"))

        await manager.stop()

        assert manager.channels == {}
        assert all(t.closed for t in factory.created)
        assert manager.running is False

    @pytest.mark.asyncio
    async def test_start_with_db(self, factory):
        """测试启动时连接数据库、同步并订阅"""
        db = make_db({"a": {"device": "/dev/ttyUSB0", "baud_rate": "9600"}})
        manager = ChannelManager(transport_factory=factory, db=db)

        with patch('serial_terminal.manager.list_serial_ports', return_value=[]):
            await manager.start()

        db.connect.assert_called_once()
        db.subscribe_config_changes.assert_called_once()
        assert manager.running is True
        assert manager.channels["a"].config.baud_rate == 9600

        await manager.stop()
        db.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_sync_adds_updates_removes(self, factory):
        """测试同步：添加、配置变化重连、删除"""
        db = make_db({"a": {"device": "/dev/ttyUSB0"}, "b": {"device": "/dev/ttyUSB1"}})
        manager = ChannelManager(transport_factory=factory, db=db)

        await manager.sync()
        assert set(manager.channels) == {"a", "b"}

        # 相同配置不重连
        await manager.sync()
        assert len(factory.created) == 2

        db.get_all_configs.return_value = {"a": {"device": "/dev/ttyUSB0", "decoder": "SLIP"}}
        await manager.sync()

        assert set(manager.channels) == {"a"}
        assert manager.channels["a"].decoder == "SLIP"
        assert len(factory.created) == 3
        await manager.stop()

    @pytest.mark.asyncio
    async def test_sync_leaves_manual_channels(self, factory):
        """测试同步只影响由 Redis 管理的通道"""
        db = make_db({})
        manager = ChannelManager(transport_factory=factory, db=db)
        await manager.connect("manual", SerialConfig("/dev/ttyUSB3"))

        await manager.sync()

        assert "manual" in manager.channels
        await manager.stop()

    @pytest.mark.asyncio
    async def test_sync_skips_invalid_config(self, factory, caplog):
        db = make_db({"bad": {"device": "/dev/ttyUSB0", "data_bits": "9"}})
        manager = ChannelManager(transport_factory=factory, db=db)

        with caplog.at_level(logging.ERROR):
            await manager.sync()

        assert manager.channels == {}
        assert "Invalid config" in caplog.text

    @pytest.mark.asyncio
    async def test_state_published_to_db(self, factory):
        """测试状态变化写入 STATE_DB，断开时清理"""
        db = make_db()
        manager = ChannelManager(transport_factory=factory, db=db)

        await manager.connect("a", SerialConfig("/dev/ttyUSB0"))
        await settle()

        states = [c.args[1] for c in db.update_state.call_args_list]
        assert states == ["connecting", "connected"]
        assert db.update_state.call_args_list[-1].args[2]["device"] == "/dev/ttyUSB0"

        await manager.disconnect("a")
        await settle()
        db.cleanup_state.assert_called_with("a")
        await manager.stop()

    @pytest.mark.asyncio
    async def test_run_syncs_on_config_event(self, factory):
        """测试收到配置变更事件时重新同步"""
        db = make_db()
        manager = ChannelManager(transport_factory=factory, db=db)
        manager.running = True

        async def one_event():
            manager.running = False
            return {"channel": "__keyspace@4__:SERIAL_CHANNEL|a", "data": "hset"}

        db.get_config_event.side_effect = one_event

        await manager.run()

        db.get_all_configs.assert_called_once()
