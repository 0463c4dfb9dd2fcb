"""
테스트용 설정 모델 및 가짜 KV 스토어
"""

import asyncio
import time
from collections.abc import Callable

from pydantic import BaseModel, Field

from liveconf import ChangeItem, SourceEvent


class AppSection(BaseModel):
    name: str = "demo"
    port: int = 8080
    debug: bool = False
    ratio: float = 0.5
    tags: list[str] = Field(default_factory=lambda: ["a", "b"])


class ServerSection(BaseModel):
    host: str = "localhost"
    port: int = 8080


class AppConfig(BaseModel):
    """테스트 기본 설정 모델"""

    app: AppSection = Field(default_factory=AppSection)
    server: ServerSection = Field(default_factory=ServerSection)
    features: dict[str, bool] = Field(default_factory=lambda: {"search": True})


class FakeKVStore:
    """메모리 KV 스토어 (etcd 대역)

    put/push 모두 해당 키의 watch 스트림으로 값을 전달합니다.
    """

    def __init__(self, data: dict[str, bytes] | None = None):
        self.data: dict[str, bytes] = dict(data or {})
        self.puts: list[tuple[str, bytes]] = []
        self.closed = False
        self._watchers: list[tuple[str, asyncio.Queue]] = []

    async def get(self, key: str) -> tuple[bytes | None, bool]:
        if key in self.data:
            return self.data[key], True
        return None, False

    async def put(self, key: str, value: bytes) -> None:
        self.puts.append((key, value))
        self.push(key, value)

    def push(self, key: str, value: bytes) -> None:
        """외부 클라이언트의 쓰기 흉내"""
        self.data[key] = value
        for watch_key, queue in self._watchers:
            if watch_key == key:
                queue.put_nowait(value)

    async def watch(self, key: str):
        queue: asyncio.Queue = asyncio.Queue()
        entry = (key, queue)
        self._watchers.append(entry)
        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers.remove(entry)

    @property
    def watcher_count(self) -> int:
        return len(self._watchers)

    async def close(self) -> None:
        self.closed = True


class RecordingObserver:
    """호출 기록 옵저버"""

    def __init__(self):
        self.calls: list[tuple[SourceEvent, list[ChangeItem]]] = []

    def __call__(self, event: SourceEvent, changes: list[ChangeItem]) -> None:
        self.calls.append((event, list(changes)))

    @property
    def paths(self) -> list[str]:
        return [c.path for _, changes in self.calls for c in changes]


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """조건이 참이 될 때까지 폴링"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()
