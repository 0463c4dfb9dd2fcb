"""
설정 소스 바인딩 (SourceBinder)

기본값(typed 모델)을 소스 고유 표현(파일/KV 문서)으로 직렬화하고,
소스 내용을 다시 typed 모델로 병합합니다.

소스별 동작:
- 파일: 없으면 기본값으로 생성(상위 디렉토리 포함), 있으면 읽어서 deep-merge.
  여러 파일은 뒤 파일이 앞 파일을 키 단위로 덮어씀. persist는 첫 번째 파일에 기록
- 환경변수 전용: 파일/KV 입출력 없음
- etcd: 키가 없으면 기본값 기록, 있으면 읽어서 deep-merge

환경변수 오버레이는 소스 병합 후 마지막에 적용됩니다 (최우선).
실패 시 아무것도 반영하지 않으며, 호출자는 기존 값을 유지합니다.
"""

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from .codecs import decode, encode
from .env_overlay import apply_env_overlay
from .errors import DecodeError, SourceIOError
from .etcd_client import KVStore
from .merge import deep_merge
from .types import EtcdLocation, SourceDescriptor, SourceKind

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class SourceBinder(Generic[T]):
    """소스 ↔ typed 설정 바인더

    사용법:
        ```python
        binder = SourceBinder(AppConfig, descriptor)
        config = await binder.bind(AppConfig())
        await binder.persist(config)
        config = await binder.reload()
        ```
    """

    def __init__(
        self,
        model_cls: type[T],
        descriptor: SourceDescriptor,
        kv_clients: Sequence[KVStore] = (),
        environ: Mapping[str, str] | None = None,
    ):
        """
        Args:
            model_cls: 설정 모델 클래스
            descriptor: 활성 소스 기술자
            kv_clients: descriptor.etcd와 같은 순서의 KV 클라이언트
            environ: 환경변수 맵 (None이면 os.environ)
        """
        if descriptor.kind == SourceKind.ETCD and len(kv_clients) != len(descriptor.etcd):
            raise ValueError("kv_clients는 etcd 위치마다 하나씩 필요합니다")

        self.model_cls = model_cls
        self.descriptor = descriptor
        self.kv_clients = list(kv_clients)
        self.environ = environ
        self._default_data: dict[str, Any] = {}

    def dump(self, value: T) -> dict[str, Any]:
        """모델 → 소스 표현 dict (alias 기준 키)"""
        return value.model_dump(mode="json", by_alias=True)

    async def bind(self, default: T) -> T:
        """기본값을 소스와 바인딩하여 최초 스냅샷 생성

        Raises:
            SourceIOError: 파일/KV 입출력 실패
            DecodeError: 소스 내용 파싱 실패
            UnsupportedFormatError: 알 수 없는 포맷
        """
        self._default_data = self.dump(default)
        merged = self._default_data

        if self.descriptor.kind == SourceKind.FILE:
            merged = self._merge_files(merged, create_missing=True)
        elif self.descriptor.kind == SourceKind.ETCD:
            merged = await self._merge_kv(merged, create_missing=True)

        value = self._finalize(merged)
        logger.info(
            f"[SourceBinder] 바인딩 완료: kind={self.descriptor.kind.value}, "
            f"sources={self.descriptor.names}"
        )
        return value

    async def reload(self) -> T:
        """소스를 다시 읽어 새 스냅샷 생성

        기본값 위에 소스를 다시 병합합니다. 파일을 새로 만들지 않습니다.
        """
        merged = self._default_data

        if self.descriptor.kind == SourceKind.FILE:
            merged = self._merge_files(merged, create_missing=False)
        elif self.descriptor.kind == SourceKind.ETCD:
            merged = await self._merge_kv(merged, create_missing=False)

        return self._finalize(merged)

    def reload_from_pushed(self, location: EtcdLocation, raw: bytes, current: T) -> T:
        """KV watch로 전달된 문서를 현재 스냅샷 위에 병합 (재조회 없음)"""
        pushed = decode(raw, self.descriptor.kv_format)
        logger.debug(f"[SourceBinder] 푸시된 설정 병합: {location.key}")
        return self._finalize(deep_merge(self.dump(current), pushed))

    async def persist(self, value: T) -> None:
        """현재 값을 활성 소스에 기록

        파일은 첫 번째(정규) 파일, etcd는 첫 번째 위치에 기록합니다.
        환경변수 전용 모드는 기록하지 않습니다.
        """
        data = self.dump(value)

        if self.descriptor.kind == SourceKind.FILE:
            path = self.descriptor.canonical_file
            self._write_file(path, encode(data, self.descriptor.format_for(path)))
            logger.info(f"[SourceBinder] 설정 파일 저장: {path}")

        elif self.descriptor.kind == SourceKind.ETCD:
            location = self.descriptor.etcd[0]
            await self.kv_clients[0].put(location.key, encode(data, self.descriptor.kv_format))
            logger.info(f"[SourceBinder] etcd 설정 저장: {location.key}")

    def _finalize(self, merged: dict[str, Any]) -> T:
        """환경변수 오버레이 적용 후 모델 검증"""
        if self.descriptor.env_enabled:
            merged = apply_env_overlay(
                merged, self.descriptor.env_prefix, self.environ, self.model_cls
            )

        try:
            return self.model_cls.model_validate(merged)
        except ValidationError as e:
            raise DecodeError(f"설정 값 검증 실패: {e}") from e

    def _merge_files(self, base: dict[str, Any], create_missing: bool) -> dict[str, Any]:
        merged = base
        for path in self.descriptor.files:
            fmt = self.descriptor.format_for(path)

            if not path.exists():
                if not create_missing:
                    raise SourceIOError(f"설정 파일 없음: {path}")
                self._write_file(path, encode(self._default_data, fmt))
                logger.info(f"[SourceBinder] 기본 설정 파일 생성: {path}")
                continue

            merged = deep_merge(merged, decode(self._read_file(path), fmt))
        return merged

    async def _merge_kv(self, base: dict[str, Any], create_missing: bool) -> dict[str, Any]:
        merged = base
        fmt = self.descriptor.kv_format
        for location, client in zip(self.descriptor.etcd, self.kv_clients):
            raw, exists = await client.get(location.key)

            if not exists:
                if create_missing:
                    await client.put(location.key, encode(self._default_data, fmt))
                    logger.info(f"[SourceBinder] etcd 기본 설정 기록: {location.key}")
                continue

            merged = deep_merge(merged, decode(raw or b"", fmt))
        return merged

    @staticmethod
    def _read_file(path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as e:
            raise SourceIOError(f"설정 파일 읽기 실패: {path} - {e}") from e

    @staticmethod
    def _write_file(path: Path, content: bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
        except OSError as e:
            raise SourceIOError(f"설정 파일 쓰기 실패: {path} - {e}") from e
