"""
소스 변경 감시 (WatchScheduler)

- 파일 모드: watchdog으로 설정 파일 디렉토리를 감시. 쓰기 이벤트 후 짧은
  안정화 대기(settle) 뒤 콜백 호출. 여러 파일이 하나의 콜백으로 모임
- etcd 모드: 위치마다 watch 스트림 태스크 하나. 푸시된 값을 그대로 콜백에 전달
- 환경변수 모드: 감시 없음

watchdog 스레드는 엔진 상태를 직접 건드리지 않고
loop.call_soon_threadsafe로 이벤트 루프에 넘깁니다.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .etcd_client import KVStore
from .types import EtcdLocation, EventOp, SourceDescriptor, SourceEvent, SourceKind

logger = logging.getLogger(__name__)

ExternalChange = Callable[[SourceEvent, bytes | None], Awaitable[None]]


class _ConfigFileHandler(FileSystemEventHandler):
    """설정 파일 쓰기 이벤트 필터"""

    def __init__(self, scheduler: "WatchScheduler", targets: set[Path]):
        self.scheduler = scheduler
        self.targets = targets

    def _match(self, raw_path: str | bytes) -> Path | None:
        path = Path(os.fsdecode(raw_path)).resolve()
        return path if path in self.targets else None

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        path = self._match(event.src_path)
        if path:
            self.scheduler.signal_file(path)

    def on_created(self, event: FileSystemEvent) -> None:
        self.on_modified(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        # 에디터의 임시 파일 → 원본 교체 저장
        if event.is_directory:
            return
        path = self._match(event.dest_path)
        if path:
            self.scheduler.signal_file(path)


class WatchScheduler:
    """소스 변경 감시 스케줄러

    사용법:
        ```python
        scheduler = WatchScheduler(descriptor, kv_clients)
        scheduler.start(on_external_change)

        # 종료 시
        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        descriptor: SourceDescriptor,
        kv_clients: Sequence[KVStore] = (),
        settle_seconds: float = 0.1,
        reconnect_seconds: float = 1.0,
    ):
        """
        Args:
            descriptor: 활성 소스 기술자
            kv_clients: descriptor.etcd와 같은 순서의 KV 클라이언트
            settle_seconds: 파일 쓰기 후 읽기 전 대기 시간 (초)
            reconnect_seconds: watch 스트림 재연결 대기 시간 (초)
        """
        self.descriptor = descriptor
        self.kv_clients = list(kv_clients)
        self.settle_seconds = settle_seconds
        self.reconnect_seconds = reconnect_seconds

        self._on_change: ExternalChange | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._observer: Observer | None = None
        self._tasks: set[asyncio.Task] = set()
        self._pending: dict[Path, asyncio.Task] = {}
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._on_change is not None and not self._stopped

    def start(self, on_external_change: ExternalChange) -> bool:
        """감시 시작 (이벤트 루프 안에서 호출)

        Returns:
            bool: 감시자가 실제로 시작되었는지 (환경변수 모드는 False)
        """
        self._loop = asyncio.get_running_loop()
        self._on_change = on_external_change
        self._stopped = False

        if self.descriptor.kind == SourceKind.FILE:
            self._start_file_watch()
            return True

        if self.descriptor.kind == SourceKind.ETCD:
            for location, client in zip(self.descriptor.etcd, self.kv_clients):
                self._spawn(self._watch_kv(location, client))
            logger.info(f"[WatchScheduler] etcd 감시 시작: {self.descriptor.names}")
            return True

        return False

    def _start_file_watch(self) -> None:
        targets = {p.resolve() for p in self.descriptor.files}
        handler = _ConfigFileHandler(self, targets)
        self._observer = Observer()

        # 감시 디렉토리 등록 (파일마다가 아닌 디렉토리 단위)
        watched_dirs = sorted({str(p.parent) for p in targets})
        for dir_path in watched_dirs:
            self._observer.schedule(handler, dir_path, recursive=False)

        self._observer.start()
        logger.info(f"[WatchScheduler] 파일 감시 시작: {watched_dirs}")

    def signal_file(self, path: Path) -> None:
        """watchdog 스레드에서 호출됨 → 이벤트 루프로 전달"""
        if self._stopped or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._schedule_settle, path)
        except RuntimeError:
            # 이벤트 루프가 이미 닫힘
            pass

    def _schedule_settle(self, path: Path) -> None:
        """경로별 settle 타이머 재시작"""
        if self._stopped:
            return
        pending = self._pending.get(path)
        if pending and not pending.done():
            pending.cancel()
        self._pending[path] = self._spawn(self._settle_then_notify(path))

    async def _settle_then_notify(self, path: Path) -> None:
        await asyncio.sleep(self.settle_seconds)
        if self._stopped or self._on_change is None:
            return
        logger.debug(f"[WatchScheduler] 파일 변경 감지: {path}")
        # 이미 시작된 리로드는 stop()으로 취소되지 않음
        await asyncio.shield(
            self._on_change(SourceEvent(SourceKind.FILE, str(path), EventOp.WRITE), None)
        )

    async def _watch_kv(self, location: EtcdLocation, client: KVStore) -> None:
        """watch 스트림 유지 (실패 시 재연결)"""
        while not self._stopped:
            try:
                async for value in client.watch(location.key):
                    if self._stopped or self._on_change is None:
                        return
                    await asyncio.shield(
                        self._on_change(
                            SourceEvent(SourceKind.ETCD, location.key, EventOp.PUT), value
                        )
                    )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._stopped:
                    return
                logger.error(f"[WatchScheduler] etcd watch 실패: {location.key} - {e}")

            if self._stopped:
                return
            await asyncio.sleep(self.reconnect_seconds)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def stop(self) -> None:
        """감시 중지

        이미 debounce 검사를 통과한 리로드는 끝까지 실행되며,
        이후 도착하는 변경 신호는 처리하지 않습니다.
        """
        if self._stopped:
            return
        self._stopped = True

        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("[WatchScheduler] 파일 감시 중지")

        # 자기 자신(콜백 안에서 stop 호출)은 취소하지 않음
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._pending.clear()
        self._on_change = None
