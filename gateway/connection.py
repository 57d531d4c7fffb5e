"""
连接管理 - WebSocket 连接封装与单例登记
"""
import json
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from fastapi import WebSocket
from loguru import logger


class Connection:
    """单个 WebSocket 连接"""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.connected_at = datetime.now()
        self.closed = False
        self.metadata: Dict[str, Any] = {}

    async def send_message(self, message: Any) -> None:
        """发送消息"""
        if isinstance(message, (dict, list)):
            data = json.dumps(message, ensure_ascii=False, default=str)
        else:
            data = str(message)
        await self.websocket.send_text(data)

    async def receive_text(self) -> str:
        return await self.websocket.receive_text()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Close failed for {self.connection_id}: {e}")


class ConnectionRegistry:
    """
    按 (kind, identity) 登记活跃连接，每个身份同一时刻只允许一个连接

    由应用创建并注入各连接处理器，不使用模块级全局状态。
    """

    def __init__(self):
        self._active: Dict[Tuple[str, str], Any] = {}

    def acquire(self, kind: str, identity: str, handler: Any) -> bool:
        """登记连接；该身份已有活跃连接时返回 False，不做任何修改"""
        key = (kind, identity)
        current = self._active.get(key)
        if current is not None and current is not handler:
            logger.warning(f"Rejecting duplicate {kind} connection for {identity}")
            return False
        self._active[key] = handler
        return True

    def release(self, kind: str, identity: str, handler: Any) -> None:
        """只释放自己持有的登记"""
        key = (kind, identity)
        if self._active.get(key) is handler:
            del self._active[key]

    def get(self, kind: str, identity: str) -> Optional[Any]:
        return self._active.get((kind, identity))

    def is_active(self, kind: str, identity: str) -> bool:
        return (kind, identity) in self._active

    def active_count(self, kind: Optional[str] = None) -> int:
        if kind is None:
            return len(self._active)
        return sum(1 for k, _ in self._active if k == kind)

    def get_connections_info(self) -> Dict[str, Dict[str, Any]]:
        info: Dict[str, Dict[str, Any]] = {}
        for (kind, identity), handler in self._active.items():
            connection = getattr(handler, "connection", None)
            info[f"{kind}:{identity}"] = {
                "kind": kind,
                "identity": identity,
                "connection_id": getattr(connection, "connection_id", None),
                "connected_at": connection.connected_at.isoformat() if connection else None,
            }
        return info
