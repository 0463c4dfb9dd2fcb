"""
설정 엔진 및 핫 리로드

typed 설정 모델을 하나의 소스(파일 / 환경변수 / etcd)와 바인딩하고,
외부 변경을 감시하여 스냅샷을 교체한 뒤 변경 항목을 옵저버에 전달합니다.

설계 원칙:
- 전역 싱글톤 없음. 필요한 컴포넌트에 Engine 인스턴스를 직접 전달
- 스냅샷은 통째로 교체 (필드 단위 수정 없음), 읽기는 항상 복사본
- 리로드 → diff → dispatch는 하나의 사이클 락 안에서 순차 실행
- 백그라운드 리로드 실패는 로깅만 하고 마지막 정상 스냅샷 유지

상태: UNINITIALIZED → BOUND → WATCHING → CLOSED
(환경변수 전용 모드는 BOUND에 머무름)

사용법:
    ```python
    class AppConfig(BaseModel):
        app: AppSection = AppSection()

    engine = await Engine.create(AppConfig(), files=["config/app.yaml"])

    def on_change(event, changes):
        for item in changes:
            print(item.path, item.old_value, item.new_value)

    engine.on_change(on_change)
    config = engine.get_data()

    # 앱 종료 시
    await engine.close()
    ```
"""

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from .binder import SourceBinder
from .diff import find_changes
from .errors import EngineClosedError, ErrorClassifier, LiveConfError
from .etcd_client import EtcdClient, KVStore
from .options import EngineOptions
from .registry import CallbackRegistry, Observer
from .types import (
    ChangeItem,
    DebounceState,
    EngineState,
    EtcdLocation,
    EventOp,
    SourceDescriptor,
    SourceEvent,
)
from .watcher import WatchScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class Engine(Generic[T]):
    """핫 리로드 설정 엔진"""

    def __init__(
        self,
        default: T,
        options: EngineOptions | None = None,
        *,
        kv_client_factory: Callable[[EtcdLocation], KVStore] | None = None,
        environ: Mapping[str, str] | None = None,
        **kwargs: Any,
    ):
        """
        Args:
            default: 기본 설정 값 (모델 인스턴스)
            options: 엔진 옵션. None이면 kwargs로 EngineOptions 생성
            kv_client_factory: etcd 위치 → KV 클라이언트 (기본 EtcdClient)
            environ: 환경변수 맵 (None이면 os.environ)
            **kwargs: EngineOptions 필드 (files, config_format, env_prefix, ...)

        Raises:
            SourceConflictError: 소스 종류 혼용
            UnsupportedFormatError: 알 수 없는 포맷/확장자
        """
        if not isinstance(default, BaseModel):
            raise TypeError("default는 pydantic BaseModel 인스턴스여야 합니다")
        if options is not None and kwargs:
            raise TypeError("options와 키워드 옵션은 함께 사용할 수 없습니다")

        self._options = options or EngineOptions(**kwargs)
        self._descriptor = self._options.validate()
        self._model_cls: type[T] = type(default)
        self._default: T = default.model_copy(deep=True)

        self._state = EngineState.UNINITIALIZED
        self._data: T | None = None
        self._previous: T | None = None
        self._closed = False
        # 스냅샷 + closed 플래그 보호 (짧게만 잡음)
        self._data_lock = threading.Lock()
        # 리로드/업데이트 사이클 직렬화 (debounce 검사 ~ dispatch)
        self._cycle_lock = asyncio.Lock()
        self._debounce = DebounceState(window_seconds=self._options.debounce_seconds)
        self._registry = CallbackRegistry()

        factory = kv_client_factory or EtcdClient
        self._kv_clients: list[KVStore] = [factory(loc) for loc in self._descriptor.etcd]

        self._binder: SourceBinder[T] = SourceBinder(
            self._model_cls, self._descriptor, self._kv_clients, environ
        )
        self._scheduler = WatchScheduler(
            self._descriptor,
            self._kv_clients,
            settle_seconds=self._options.settle_seconds,
            reconnect_seconds=self._options.reconnect_seconds,
        )

    # ------------------------------------------------------------------
    # 생성 / 시작 / 종료
    # ------------------------------------------------------------------

    @classmethod
    async def create(
        cls,
        default: T,
        options: EngineOptions | None = None,
        **kwargs: Any,
    ) -> "Engine[T]":
        """엔진 생성 → 바인딩 → 감시 시작

        실패 시 열린 리소스를 정리하고 예외를 그대로 전파합니다.
        """
        engine = cls(default, options, **kwargs)
        try:
            await engine.start()
        except BaseException:
            await engine.close()
            raise
        return engine

    async def start(self) -> None:
        """소스 바인딩 후 감시 시작"""
        if self._state != EngineState.UNINITIALIZED:
            raise LiveConfError(f"이미 시작된 엔진입니다: state={self._state.value}")

        data = await self._binder.bind(self._default)
        with self._data_lock:
            self._data = data
        self._state = EngineState.BOUND

        if self._options.watch and self._scheduler.start(self.trigger_reload):
            self._state = EngineState.WATCHING

        logger.info(
            f"[Engine] 엔진 시작: state={self._state.value}, "
            f"kind={self._descriptor.kind.value}, sources={self._descriptor.names}"
        )

    async def close(self) -> None:
        """감시 중지, KV 연결 해제, 옵저버 제거, 스냅샷 폐기

        여러 번 호출해도 안전합니다.
        """
        with self._data_lock:
            if self._closed:
                return
            self._closed = True
            self._data = None
            self._previous = None
        self._state = EngineState.CLOSED

        await self._scheduler.stop()

        for client in self._kv_clients:
            try:
                await client.close()
            except Exception as e:
                logger.error(f"[Engine] KV 클라이언트 종료 실패: {e}")

        self._registry.clear()
        logger.info("[Engine] 엔진 종료")

    async def __aenter__(self) -> "Engine[T]":
        if self._state == EngineState.UNINITIALIZED:
            try:
                await self.start()
            except BaseException:
                await self.close()
                raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # 공개 API
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        """엔진 상태"""
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def descriptor(self) -> SourceDescriptor:
        """활성 소스 기술자"""
        return self._descriptor

    def get_data(self) -> T:
        """현재 스냅샷의 복사본 (입출력 없음)

        Raises:
            EngineClosedError: 종료된 엔진
        """
        with self._data_lock:
            if self._closed:
                raise EngineClosedError("종료된 엔진입니다")
            data = self._data
        if data is None:
            raise LiveConfError("엔진이 아직 바인딩되지 않았습니다")
        return data.model_copy(deep=True)

    def on_change(self, observer: Observer) -> None:
        """변경 옵저버 등록 (종료된 엔진에서는 무시)"""
        if self._closed:
            logger.warning("[Engine] 종료된 엔진에 옵저버 등록 시도 - 무시")
            return
        self._registry.register(observer)

    async def update(self, new_value: T) -> None:
        """설정 교체 + 소스 저장 + 변경 통지

        저장에 실패하면 예외를 전파하고 기존 스냅샷을 유지합니다.
        옵저버는 이 메서드가 반환되기 전에 모두 실행됩니다.

        Raises:
            EngineClosedError: 종료된 엔진
            SourceIOError: 파일/KV 저장 실패
        """
        if not isinstance(new_value, self._model_cls):
            raise TypeError(
                f"{self._model_cls.__name__} 인스턴스가 필요합니다: {type(new_value).__name__}"
            )
        self._ensure_bound()

        async with self._cycle_lock:
            self._ensure_bound()
            value = new_value.model_copy(deep=True)

            await self._binder.persist(value)
            # 자기 자신의 쓰기가 외부 변경으로 다시 감지되지 않도록
            self._debounce.mark(time.monotonic())

            event = SourceEvent(self._descriptor.kind, self._descriptor.names[0], EventOp.UPDATE)
            await self._commit(event, value)

    async def trigger_reload(
        self, event: SourceEvent | None = None, pushed: bytes | None = None
    ) -> bool:
        """외부 변경 신호 처리 (감시자가 호출, 수동 호출 가능)

        debounce 윈도우 안의 신호는 리로드 없이 버립니다.
        리로드 실패는 로깅하고 기존 스냅샷을 유지합니다.

        Args:
            event: 변경 이벤트 메타데이터 (None이면 WRITE 이벤트 생성)
            pushed: KV watch로 전달된 문서 (있으면 재조회 없이 사용)

        Returns:
            bool: 새 스냅샷이 반영되었는지
        """
        if event is None:
            event = SourceEvent(self._descriptor.kind, self._descriptor.names[0], EventOp.WRITE)

        async with self._cycle_lock:
            if self._closed or self._data is None:
                return False

            now = time.monotonic()
            if not self._debounce.should_accept(now):
                logger.debug(f"[Engine] debounce 윈도우 내 변경 무시: {event.name}")
                return False

            try:
                if pushed is not None:
                    new_data = self._binder.reload_from_pushed(
                        self._location_for(event.name), pushed, self._data
                    )
                else:
                    new_data = await self._binder.reload()
            except Exception as e:
                logger.error(
                    f"[Engine] 설정 리로드 실패, 기존 설정 유지: {event.name} - "
                    f"{ErrorClassifier.format_message(e)}"
                )
                return False

            self._debounce.mark(time.monotonic())
            logger.info(f"[Engine] 설정 리로드: {event.name}")
            await self._commit(event, new_data)
            return True

    # ------------------------------------------------------------------
    # 내부
    # ------------------------------------------------------------------

    def _ensure_bound(self) -> None:
        if self._closed:
            raise EngineClosedError("종료된 엔진입니다")
        if self._data is None:
            raise LiveConfError("엔진이 아직 바인딩되지 않았습니다")

    def _location_for(self, key: str) -> EtcdLocation:
        for location in self._descriptor.etcd:
            if location.key == key:
                return location
        return self._descriptor.etcd[0]

    async def _commit(self, event: SourceEvent, new_data: T) -> list[ChangeItem]:
        """스냅샷 교체 → diff → dispatch (사이클 락 안에서 호출)"""
        with self._data_lock:
            if self._closed:
                return []
            self._previous = self._data
            self._data = new_data

        changes = find_changes(self._previous, new_data)
        self._previous = None

        if not changes:
            logger.debug(f"[Engine] 변경 없음: {event.name}")
            return changes

        logger.info(f"[Engine] 설정 변경 {len(changes)}건: {[c.path for c in changes]}")

        # 종료 직후라면 옵저버 호출하지 않음
        if self._closed:
            return changes
        await self._registry.dispatch(event, changes)
        return changes

    def __repr__(self) -> str:
        return (
            f"Engine(model={self._model_cls.__name__}, kind={self._descriptor.kind.value}, "
            f"state={self._state.value})"
        )
