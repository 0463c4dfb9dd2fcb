"""
공용 타입 정의

설정 포맷, 소스 종류, 변경 항목, 소스 이벤트 등 엔진 전반에서 쓰는 Enum/Dataclass.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import UnsupportedFormatError


class ConfigFormat(str, Enum):
    """설정 직렬화 포맷"""

    JSON = "json"
    YAML = "yaml"
    TOML = "toml"

    @classmethod
    def from_path(cls, path: str | Path) -> "ConfigFormat":
        """파일 확장자로 포맷 추론

        Args:
            path: 설정 파일 경로

        Returns:
            ConfigFormat

        Raises:
            UnsupportedFormatError: 인식할 수 없는 확장자
        """
        suffix = Path(path).suffix.lower()
        if suffix == ".json":
            return cls.JSON
        if suffix in (".yaml", ".yml"):
            return cls.YAML
        if suffix == ".toml":
            return cls.TOML
        raise UnsupportedFormatError(f"지원하지 않는 설정 파일 확장자: {path}")

    @classmethod
    def parse(cls, value: "str | ConfigFormat") -> "ConfigFormat":
        """문자열을 포맷으로 변환 ("yml" 별칭 허용)"""
        if isinstance(value, ConfigFormat):
            return value
        normalized = value.strip().lower().lstrip(".")
        if normalized == "yml":
            normalized = "yaml"
        try:
            return cls(normalized)
        except ValueError as e:
            raise UnsupportedFormatError(f"지원하지 않는 설정 포맷: {value}") from e


class SourceKind(str, Enum):
    """설정 소스 종류 (엔진당 하나만 활성)"""

    FILE = "file"
    ENV = "env"
    ETCD = "etcd"


class EventOp(str, Enum):
    """변경 이벤트 종류"""

    WRITE = "write"  # 파일 쓰기 감지
    PUT = "put"  # KV 스토어 푸시
    UPDATE = "update"  # Engine.update() 호출


class EngineState(str, Enum):
    """엔진 상태"""

    UNINITIALIZED = "uninitialized"
    BOUND = "bound"
    WATCHING = "watching"
    CLOSED = "closed"


@dataclass(frozen=True)
class ChangeItem:
    """설정 변경 항목

    path는 점(.)으로 구분된 필드 경로. 리스트 원소는 path[index],
    딕셔너리 항목은 path.key 형식.
    """

    path: str
    old_value: Any
    new_value: Any


@dataclass(frozen=True)
class SourceEvent:
    """변경을 일으킨 소스 이벤트 메타데이터"""

    source: SourceKind
    name: str  # 파일 경로 또는 KV 키
    op: EventOp


@dataclass(frozen=True)
class TLSConfig:
    """etcd TLS 설정"""

    cert_file: str = ""
    key_file: str = ""
    trusted_ca_file: str = ""


@dataclass(frozen=True)
class EtcdLocation:
    """etcd 설정 위치 (엔드포인트 + 키)"""

    endpoints: tuple[str, ...] = ("http://etcd-test:2379",)
    key: str = "/config/app"
    username: str = ""
    password: str = ""
    timeout: float = 5.0
    tls: TLSConfig | None = None

    @classmethod
    def default(cls) -> "EtcdLocation":
        """기본 etcd 위치"""
        return cls()


@dataclass(frozen=True)
class SourceDescriptor:
    """활성 설정 소스 기술자

    EngineOptions.validate()로만 생성됩니다. 생성 후 불변.
    """

    kind: SourceKind
    files: tuple[Path, ...] = ()
    config_format: ConfigFormat | None = None
    etcd: tuple[EtcdLocation, ...] = ()
    env_enabled: bool = True
    env_prefix: str = ""

    def format_for(self, path: Path) -> ConfigFormat:
        """파일별 포맷 (명시 포맷 우선, 없으면 확장자 추론)"""
        if self.config_format is not None:
            return self.config_format
        return ConfigFormat.from_path(path)

    @property
    def kv_format(self) -> ConfigFormat:
        """KV 위치에서 사용하는 포맷 (기본 JSON)"""
        return self.config_format or ConfigFormat.JSON

    @property
    def canonical_file(self) -> Path | None:
        """persist 대상 파일 (첫 번째 파일)"""
        return self.files[0] if self.files else None

    @property
    def names(self) -> list[str]:
        """로그용 소스 이름 목록"""
        if self.kind == SourceKind.FILE:
            return [str(p) for p in self.files]
        if self.kind == SourceKind.ETCD:
            return [loc.key for loc in self.etcd]
        return [f"{self.env_prefix}_*" if self.env_prefix else "*"]


@dataclass
class DebounceState:
    """디바운스 상태 (마지막 수락 시각 + 고정 윈도우)"""

    window_seconds: float = 0.5
    last_accepted: float | None = field(default=None)

    def should_accept(self, now: float) -> bool:
        """윈도우 밖이면 True"""
        if self.last_accepted is None:
            return True
        return now - self.last_accepted >= self.window_seconds

    def mark(self, now: float) -> None:
        """수락 시각 기록"""
        self.last_accepted = now
