"""
数据库工具类

封装 Redis 数据库操作，包括通道配置读取、状态更新、事件订阅等。
"""

import time
import logging
from typing import Any, Dict, Optional

import redis.asyncio as aioredis

from .constants import REDIS_HOST, REDIS_PORT, CONFIG_DB, STATE_DB, CHANNEL_TABLE, CHANNEL_PATTERN

log = logging.getLogger(__name__)


class DbUtil:
    """Redis 数据库操作封装"""

    def __init__(self, host: str = REDIS_HOST, port: int = REDIS_PORT,
                 config_db: int = CONFIG_DB, state_db: int = STATE_DB):
        self.host = host
        self.port = port
        self.config_db_index = config_db
        self.state_db_index = state_db
        self.config_db: Optional[aioredis.Redis] = None
        self.state_db: Optional[aioredis.Redis] = None
        self.pubsub: Optional[aioredis.client.PubSub] = None

    async def connect(self) -> None:
        """连接 Redis 数据库"""
        self.config_db = aioredis.Redis(
            host=self.host, port=self.port, db=self.config_db_index,
            decode_responses=True
        )
        await self.config_db.ping()  # type: ignore
        log.info(f"Connected to Redis config db={self.config_db_index}")

        self.state_db = aioredis.Redis(
            host=self.host, port=self.port, db=self.state_db_index,
            decode_responses=True
        )
        await self.state_db.ping()  # type: ignore
        log.info(f"Connected to Redis state db={self.state_db_index}")

    async def close(self) -> None:
        """关闭 Redis 连接"""
        if self.pubsub:
            await self.pubsub.unsubscribe()
            await self.pubsub.aclose()
            self.pubsub = None
        if self.config_db:
            await self.config_db.aclose()
            self.config_db = None
        if self.state_db:
            await self.state_db.aclose()
            self.state_db = None

    async def subscribe_config_changes(self) -> None:
        """订阅通道配置变更事件"""
        if not self.config_db:
            return
        self.pubsub = self.config_db.pubsub()
        pattern = f"__keyspace@{self.config_db_index}__:{CHANNEL_PATTERN}"
        await self.pubsub.psubscribe(pattern)
        log.info(f"Subscribed: {pattern}")

    async def get_config_event(self) -> Optional[dict]:
        """获取配置变更事件（最多等待 1 秒）"""
        if not self.pubsub:
            return None
        return await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)

    async def get_all_configs(self) -> Dict[str, Dict[str, Any]]:
        """
        获取所有通道配置

        Returns:
            {channel_id: {"device": ..., "baud_rate": ..., ...}}，字段原样返回，
            由 SerialConfig.from_dict 解析
        """
        if not self.config_db:
            return {}

        keys = await self.config_db.keys(CHANNEL_PATTERN)
        configs: Dict[str, Dict[str, Any]] = {}

        for key in keys:
            channel_id = key.split("|", 1)[-1]
            data = await self.config_db.hgetall(key)  # type: ignore
            if data:
                configs[channel_id] = data
        return configs

    async def update_state(self, channel_id: str, oper_state: str,
                           config: Optional[Dict[str, Any]] = None) -> None:
        """更新通道状态（状态变化时更新 last_state_change）"""
        if not self.state_db:
            return

        key = f"{CHANNEL_TABLE}|{channel_id}"
        mapping = {
            "oper_state": oper_state,
            "last_state_change": str(int(time.time())),
        }
        if config:
            mapping["device"] = str(config.get("device", ""))
            mapping["baud_rate"] = str(config.get("baud_rate", ""))
            mapping["decoder"] = config.get("decoder") or "none"

        try:
            await self.state_db.hset(key, mapping=mapping)  # type: ignore
            log.info(f"[{channel_id}] State: {oper_state}")
        except Exception as e:
            log.error(f"[{channel_id}] Failed to update state: {e}")

    async def cleanup_state(self, channel_id: str) -> None:
        """清理 STATE_DB 状态"""
        if not self.state_db:
            return

        key = f"{CHANNEL_TABLE}|{channel_id}"

        try:
            await self.state_db.delete(key)  # type: ignore
            log.info(f"[{channel_id}] STATE_DB cleaned up")
        except Exception as e:
            log.error(f"[{channel_id}] Failed to cleanup STATE_DB: {e}")
