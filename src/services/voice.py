# src/services/voice.py
"""
음성 입출력 채널 인터페이스.

- speak(text)        : 음성 출력, 출력이 끝나면 반환
- start_listening()  : 연속 음성 인식. TranscriptEvent를 stop/abort 전까지 계속 흘려줌
- stop_listening()   : 언제든 호출 가능, 예외 없음

실제 마이크/스피커는 환자 앱(브라우저)에 있고, 서버는 WebSocket으로 이 채널을 사용한다.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# 무시하고 계속 듣는 인식 오류
TRANSIENT_ERRORS = frozenset({"no-speech", "network", "aborted"})
# 음성 루프를 끝내고 화면 버튼으로 넘어가는 오류
TERMINAL_ERRORS = frozenset({"not-allowed", "service-not-allowed", "audio-capture", "unsupported"})


@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    final: bool


class VoiceUnavailable(Exception):
    """권한 거부/미지원 → 음성 루프 종료"""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class VoiceChannel:
    async def speak(self, text: str) -> None:
        raise NotImplementedError

    def start_listening(self) -> AsyncIterator[TranscriptEvent]:
        raise NotImplementedError

    async def stop_listening(self) -> None:
        raise NotImplementedError

    async def publish(self, event: dict) -> None:
        """화면 알림용 이벤트 (선택)"""
        return None


_STOP = object()


class WebSocketVoiceChannel(VoiceChannel):
    """
    server → client
        {"type": "speak", "id": 3, "text": "..."}
        {"type": "listen"} / {"type": "listen_stop"}
        {"type": "alert", ...} / {"type": "alert_closed", ...}
    client → server
        {"type": "speech_end", "id": 3}
        {"type": "transcript", "text": "...", "final": true}
        {"type": "error", "error": "no-speech"}
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._speech_seq = 0
        self._pending_speech: Dict[int, asyncio.Future] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._unavailable: Optional[str] = None
        self._closed = False

    @property
    def available(self) -> bool:
        return self._unavailable is None and not self._closed

    async def _send(self, payload: dict) -> None:
        if self._closed:
            return
        try:
            await self._ws.send_json(payload)
        except Exception:
            # 소켓이 이미 끊긴 경우. 엔진 쪽은 stop()으로 정리됨
            logger.info("[voice] send failed type=%s", payload.get("type"))
            self._closed = True

    async def speak(self, text: str) -> None:
        self._speech_seq += 1
        speech_id = self._speech_seq
        done = asyncio.get_running_loop().create_future()
        self._pending_speech[speech_id] = done
        await self._send({"type": "speak", "id": speech_id, "text": text})
        if self._closed:
            self._pending_speech.pop(speech_id, None)
            return
        try:
            await done
        finally:
            self._pending_speech.pop(speech_id, None)

    async def start_listening(self) -> AsyncIterator[TranscriptEvent]:
        if self._unavailable:
            raise VoiceUnavailable(self._unavailable)
        # 새 세션을 열면 이전 세션은 중단
        if self._queue is not None:
            self._queue.put_nowait(_STOP)
        queue: asyncio.Queue = asyncio.Queue()
        self._queue = queue
        await self._send({"type": "listen"})
        try:
            while True:
                item = await queue.get()
                if item is _STOP:
                    return
                if isinstance(item, VoiceUnavailable):
                    raise item
                yield item
        finally:
            if self._queue is queue:
                self._queue = None

    async def stop_listening(self) -> None:
        if self._queue is not None:
            self._queue.put_nowait(_STOP)
            self._queue = None
            await self._send({"type": "listen_stop"})

    async def publish(self, event: dict) -> None:
        await self._send(event)

    # ---------- 클라이언트 메시지 ----------
    def feed(self, message: dict) -> None:
        """WebSocket 수신 루프에서 호출"""
        kind = message.get("type")
        if kind == "speech_end":
            fut = self._pending_speech.get(message.get("id"))
            if fut is not None and not fut.done():
                fut.set_result(None)
        elif kind == "transcript":
            if self._queue is not None:
                self._queue.put_nowait(
                    TranscriptEvent(text=str(message.get("text") or ""), final=bool(message.get("final")))
                )
        elif kind == "error":
            code = str(message.get("error") or "")
            if code in TERMINAL_ERRORS:
                logger.warning("[voice] recognition unavailable: %s", code)
                self._unavailable = code
                if self._queue is not None:
                    self._queue.put_nowait(VoiceUnavailable(code))
            else:
                logger.info("[voice] recognition error ignored: %s", code)

    def close(self) -> None:
        self._closed = True
        for fut in self._pending_speech.values():
            if not fut.done():
                fut.set_result(None)
        self._pending_speech.clear()
        if self._queue is not None:
            self._queue.put_nowait(_STOP)
            self._queue = None
