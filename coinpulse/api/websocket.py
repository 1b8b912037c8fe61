"""
WebSocket 实时推送
订阅 Redis coin-updates 频道, 广播给所有已连接的客户端
"""
import asyncio
import json
import logging
from typing import Optional, Set

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter()
logger = logging.getLogger(__name__)


class ConnectionManager:
    """WebSocket 连接管理器"""

    def __init__(self):
        self.active_connections: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        """接受新连接"""
        await websocket.accept()
        async with self._lock:
            self.active_connections.add(websocket)
        logger.info(f"WebSocket 连接已建立, 当前连接数: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket):
        """断开连接"""
        async with self._lock:
            self.active_connections.discard(websocket)
        logger.info(f"WebSocket 连接已断开, 当前连接数: {len(self.active_connections)}")

    async def broadcast(self, message: dict) -> int:
        """广播消息, 返回送达的连接数"""
        payload = json.dumps(message, default=str)
        dead_connections = set()
        delivered = 0

        for connection in list(self.active_connections):
            try:
                await connection.send_text(payload)
                delivered += 1
            except Exception:
                dead_connections.add(connection)

        # 清理断开的连接
        for conn in dead_connections:
            self.active_connections.discard(conn)
        return delivered


class CoinUpdateRelay:
    """Redis pub/sub -> WebSocket 广播的后台任务"""

    def __init__(self, manager: ConnectionManager, channel: str):
        self.manager = manager
        self.channel = channel
        self._task: Optional[asyncio.Task] = None

    async def start(self, redis_client) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(redis_client))

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def handle_message(self, raw) -> bool:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        try:
            update = json.loads(raw)
            coin_id = update["coinId"]
        except (TypeError, ValueError, KeyError) as e:
            logger.error(f"WS: error processing Redis message: {e}")
            return False
        await self.manager.broadcast({"type": "coinUpdate", "coinId": coin_id, "data": update.get("data")})
        return True

    async def _run(self, redis_client) -> None:
        while True:
            pubsub = redis_client.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                logger.info(f"WS: subscribed to Redis channel: {self.channel}")
                async for message in pubsub.listen():
                    if message.get("type") == "message":
                        await self.handle_message(message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"WS: Redis subscription lost, resubscribing in 5s: {e}")
                await asyncio.sleep(5)
            finally:
                try:
                    await pubsub.aclose()
                except Exception:
                    pass


# 全局连接管理器
manager = ConnectionManager()


@router.websocket("/coins")
async def websocket_coins(websocket: WebSocket):
    """
    币种行情实时推送
    消息格式: {"type": "coinUpdate", "coinId": "...", "data": {...}}
    """
    await manager.connect(websocket)
    try:
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=30)
                if data == "ping":
                    await websocket.send_text("pong")
            except asyncio.TimeoutError:
                # 发送心跳
                await websocket.send_text(json.dumps({"type": "heartbeat"}))
    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(websocket)
