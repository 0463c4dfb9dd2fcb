"""
변경 콜백 레지스트리

등록 순서대로, 하나의 임계 구역 안에서 모든 옵저버를 실행한 뒤 반환합니다.
옵저버 하나가 멈추면 뒤 옵저버와 이를 호출한 리로드 경로도 함께 멈춥니다.
"""

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable

from .types import ChangeItem, SourceEvent

logger = logging.getLogger(__name__)

Observer = Callable[[SourceEvent, list[ChangeItem]], Awaitable[None] | None]


class CallbackRegistry:
    """옵저버 목록 (추가 전용)"""

    def __init__(self):
        self._observers: list[Observer] = []
        # 목록 자체 보호 (다른 스레드에서 register 가능)
        self._list_lock = threading.Lock()
        # dispatch 임계 구역
        self._dispatch_lock = asyncio.Lock()

    def __len__(self) -> int:
        with self._list_lock:
            return len(self._observers)

    def register(self, observer: Observer) -> None:
        """옵저버 등록"""
        with self._list_lock:
            self._observers.append(observer)

    async def dispatch(self, event: SourceEvent, changes: list[ChangeItem]) -> None:
        """모든 옵저버를 등록 순서대로 실행

        dispatch 도중 등록된 옵저버는 다음 dispatch부터 호출됩니다.
        옵저버 예외는 로깅 후 다음 옵저버를 계속 실행합니다.
        """
        async with self._dispatch_lock:
            with self._list_lock:
                observers = tuple(self._observers)

            for observer in observers:
                try:
                    result = observer(event, changes)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(f"[CallbackRegistry] 콜백 실행 실패: {e}", exc_info=True)

    def clear(self) -> None:
        """모든 옵저버 제거 (진행 중인 dispatch는 이미 복사한 목록으로 끝까지 실행)"""
        with self._list_lock:
            self._observers.clear()
