# src/services/reminder_hub.py
# 음성 채널(WebSocket)이 연결된 사용자별 ReminderEngine 목록
from __future__ import annotations

import logging
from threading import RLock
from typing import Dict, List, Optional

from src.services.reminder_engine import ReminderEngine

logger = logging.getLogger(__name__)


class ReminderHub:
    def __init__(self) -> None:
        self._lock = RLock()
        self._engines: Dict[str, ReminderEngine] = {}

    def get(self, owner_cognito_id: str) -> Optional[ReminderEngine]:
        with self._lock:
            return self._engines.get(owner_cognito_id)

    def register(self, engine: ReminderEngine) -> Optional[ReminderEngine]:
        """같은 사용자가 다시 연결하면 이전 엔진을 돌려줌 (호출자가 stop)"""
        with self._lock:
            previous = self._engines.get(engine.owner_cognito_id)
            self._engines[engine.owner_cognito_id] = engine
            return previous

    def unregister(self, engine: ReminderEngine) -> None:
        with self._lock:
            if self._engines.get(engine.owner_cognito_id) is engine:
                del self._engines[engine.owner_cognito_id]

    def connected_owner_ids(self) -> List[str]:
        with self._lock:
            return list(self._engines)

    def engines(self) -> List[ReminderEngine]:
        with self._lock:
            return list(self._engines.values())

    def rollover(self, day) -> int:
        return sum(1 for engine in self.engines() if engine.table.rollover(day))

    async def sweep_all(self) -> int:
        opened = 0
        for engine in self.engines():
            try:
                if await engine.sweep() is not None:
                    opened += 1
            except Exception:
                logger.exception("[reminder_hub] sweep failed owner=%s", engine.owner_cognito_id[:6])
        return opened


hub = ReminderHub()
