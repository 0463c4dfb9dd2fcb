"""
엔진 생성 옵션

키워드 인자 또는 환경변수(LIVECONF_*)로 옵션을 구성하고,
validate()에서 단일 소스 기술자(SourceDescriptor)로 확정합니다.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigurationError, SourceConflictError
from .types import ConfigFormat, EtcdLocation, SourceDescriptor, SourceKind

logger = logging.getLogger(__name__)

DEFAULT_ENV_PREFIX = "APP"
DEFAULT_DEBOUNCE_SECONDS = 0.5
DEFAULT_SETTLE_SECONDS = 0.1


@dataclass
class EngineOptions:
    """엔진 옵션"""

    # 파일 소스
    files: list[str | Path] = field(default_factory=list)
    config_format: ConfigFormat | str | None = None

    # 환경변수 오버레이
    enable_env: bool = True
    env_prefix: str = DEFAULT_ENV_PREFIX
    env_only: bool = False  # 파일/KV 없이 환경변수만 사용

    # etcd 소스
    etcd: list[EtcdLocation] = field(default_factory=list)

    # 감시 설정
    watch: bool = True
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS  # 리로드 최소 간격
    settle_seconds: float = DEFAULT_SETTLE_SECONDS  # 파일 쓰기 완료 대기
    reconnect_seconds: float = 1.0  # watch 스트림 재연결 대기

    def validate(self) -> SourceDescriptor:
        """옵션 검증 후 소스 기술자 생성

        Returns:
            SourceDescriptor

        Raises:
            SourceConflictError: 소스 종류 혼용 또는 소스 미지정
            UnsupportedFormatError: 알 수 없는 포맷/확장자
            ConfigurationError: 잘못된 시간 값
        """
        if self.debounce_seconds < 0 or self.settle_seconds < 0 or self.reconnect_seconds < 0:
            raise ConfigurationError(
                f"시간 옵션은 0 이상이어야 합니다: debounce={self.debounce_seconds}, "
                f"settle={self.settle_seconds}, reconnect={self.reconnect_seconds}"
            )

        kinds = []
        if self.files:
            kinds.append(SourceKind.FILE)
        if self.etcd:
            kinds.append(SourceKind.ETCD)
        if self.env_only:
            kinds.append(SourceKind.ENV)

        if len(kinds) > 1:
            raise SourceConflictError(
                "설정 소스는 하나만 지정할 수 있습니다: "
                + ", ".join(k.value for k in kinds)
            )
        if not kinds:
            raise SourceConflictError("설정 소스가 지정되지 않았습니다 (files, etcd, env_only)")

        kind = kinds[0]
        config_format = (
            ConfigFormat.parse(self.config_format) if self.config_format else None
        )
        files = tuple(Path(p) for p in self.files)

        # 확장자 검증은 생성 시점에 수행
        if kind == SourceKind.FILE and config_format is None:
            for path in files:
                ConfigFormat.from_path(path)

        return SourceDescriptor(
            kind=kind,
            files=files,
            config_format=config_format,
            etcd=tuple(self.etcd),
            env_enabled=self.enable_env or kind == SourceKind.ENV,
            env_prefix=self.env_prefix,
        )

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        env_file: str | Path | None = None,
    ) -> "EngineOptions":
        """환경변수에서 옵션 로드

        Args:
            environ: 환경변수 맵 (None이면 os.environ)
            env_file: 먼저 로드할 .env 파일 경로

        Returns:
            EngineOptions
        """
        if env_file is not None and Path(env_file).exists():
            load_dotenv(env_file)

        env = os.environ if environ is None else environ

        def flag(name: str, default: bool) -> bool:
            value = env.get(name)
            if value is None or value == "":
                return default
            return value.strip().lower() in ("1", "true", "yes", "on")

        files = [p.strip() for p in env.get("LIVECONF_FILES", "").split(",") if p.strip()]

        etcd: list[EtcdLocation] = []
        endpoints = [
            e.strip() for e in env.get("LIVECONF_ETCD_ENDPOINTS", "").split(",") if e.strip()
        ]
        if endpoints:
            etcd.append(
                EtcdLocation(
                    endpoints=tuple(endpoints),
                    key=env.get("LIVECONF_ETCD_KEY", "/config/app"),
                    username=env.get("LIVECONF_ETCD_USERNAME", ""),
                    password=env.get("LIVECONF_ETCD_PASSWORD", ""),
                )
            )

        try:
            debounce_seconds = int(env.get("LIVECONF_DEBOUNCE_MS", "500")) / 1000
        except ValueError as e:
            raise ConfigurationError(
                f"잘못된 LIVECONF_DEBOUNCE_MS 값: {env.get('LIVECONF_DEBOUNCE_MS')}"
            ) from e

        return cls(
            files=files,
            config_format=env.get("LIVECONF_FORMAT") or None,
            enable_env=flag("LIVECONF_ENV_ENABLED", True),
            env_prefix=env.get("LIVECONF_ENV_PREFIX", DEFAULT_ENV_PREFIX),
            env_only=flag("LIVECONF_ENV_ONLY", False),
            etcd=etcd,
            debounce_seconds=debounce_seconds,
        )
