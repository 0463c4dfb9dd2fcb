"""
로깅 설정 모델 및 적용

설정 모델의 일부(로깅 섹션)를 표준 logging 루트 로거에 적용합니다.
엔진에 연결하면 해당 섹션이 바뀔 때마다 다시 적용됩니다.

사용법:
    ```python
    class AppConfig(BaseModel):
        log: LogSettings = LogSettings()

    engine = await Engine.create(AppConfig(), files=["config/app.yaml"])
    attach_log_settings(engine, select=lambda c: c.log, path="log")
    ```
"""

import gzip
import json
import logging
import logging.handlers
import os
import shutil
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .errors import ConfigurationError
from .types import ChangeItem, SourceEvent

logger = logging.getLogger(__name__)

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_CALLER_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s"
)


class LogFileSettings(BaseModel):
    """파일 출력 설정"""

    filename: str = "./logs/app.log"
    max_size: int = Field(default=100, description="파일 하나의 최대 크기 (MB)")
    max_backups: int = 3
    max_age: int = Field(default=28, description="백업 보관 일수 (0이면 기간 제한 없음)")
    compress: bool = True


class LogSettings(BaseModel):
    """로깅 설정"""

    level: str = "info"
    format: str = "json"  # json | console
    output: str = "stdout"  # stdout | stderr | file
    file_config: LogFileSettings = Field(default_factory=LogFileSettings)
    development: bool = False
    enable_caller: bool = True
    enable_stacktrace: bool = True
    enable_sampling: bool = False
    sampling_initial: int = 100  # 초당 같은 메시지 처음 N건은 모두 기록
    sampling_thereafter: int = 100  # 이후 M건마다 1건 기록
    default_fields: dict[str, Any] = Field(default_factory=dict)


class JsonLogFormatter(logging.Formatter):
    """한 줄 JSON 로그 포맷터"""

    def __init__(
        self,
        default_fields: dict[str, Any] | None = None,
        enable_caller: bool = True,
        enable_stacktrace: bool = True,
    ):
        super().__init__()
        self.default_fields = dict(default_fields or {})
        self.enable_caller = enable_caller
        self.enable_stacktrace = enable_stacktrace

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "time": self.formatTime(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if self.enable_caller:
            entry["caller"] = f"{record.filename}:{record.lineno}"
        if record.exc_info and self.enable_stacktrace:
            entry["stacktrace"] = self.formatException(record.exc_info)
        entry.update(self.default_fields)
        return json.dumps(entry, ensure_ascii=False, default=str)


class SamplingFilter(logging.Filter):
    """로그 샘플링

    tick(초) 단위 구간마다 같은 (레벨, 메시지)에 대해 처음 initial건은
    모두 통과시키고, 그 뒤로는 thereafter건마다 1건만 통과시킵니다.
    thereafter가 0이면 initial 이후는 모두 버립니다.
    """

    def __init__(
        self,
        initial: int = 100,
        thereafter: int = 100,
        tick: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self.initial = initial
        self.thereafter = thereafter
        self.tick = tick
        self._clock = clock
        self._window_start: float | None = None
        self._counts: dict[tuple[int, str], int] = {}
        self._lock = threading.Lock()

    def filter(self, record: logging.LogRecord) -> bool:
        key = (record.levelno, str(record.msg))
        with self._lock:
            now = self._clock()
            if self._window_start is None or now - self._window_start >= self.tick:
                self._window_start = now
                self._counts.clear()
            count = self._counts.get(key, 0) + 1
            self._counts[key] = count

        if count <= self.initial:
            return True
        return self.thereafter > 0 and (count - self.initial) % self.thereafter == 0


def _gzip_namer(name: str) -> str:
    return f"{name}.gz"


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as src, gzip.open(dest, "wb") as dst:
        shutil.copyfileobj(src, dst)
    os.remove(source)


class RetentionRotatingFileHandler(logging.handlers.RotatingFileHandler):
    """크기 기준 회전 + gzip 압축 + 보관 기간 정리"""

    def __init__(
        self,
        filename: str | Path,
        max_bytes: int,
        backup_count: int,
        max_age_days: int = 0,
        compress: bool = False,
    ):
        super().__init__(
            filename, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        self.max_age_days = max_age_days
        if compress:
            self.namer = _gzip_namer
            self.rotator = _gzip_rotator

    def doRollover(self) -> None:
        super().doRollover()
        self.prune_expired()

    def prune_expired(self, now: float | None = None) -> list[Path]:
        """보관 기간이 지난 백업 삭제

        Returns:
            삭제된 백업 경로 목록
        """
        if self.max_age_days <= 0:
            return []

        cutoff = (time.time() if now is None else now) - self.max_age_days * 86400
        base = Path(self.baseFilename)
        removed = []
        for backup in base.parent.glob(f"{base.name}.*"):
            try:
                if backup.stat().st_mtime < cutoff:
                    backup.unlink()
                    removed.append(backup)
            except OSError as e:
                logger.warning(f"[LogSettings] 오래된 로그 삭제 실패: {backup} - {e}")
        return removed


def _resolve_level(settings: LogSettings) -> int:
    if settings.development:
        return logging.DEBUG
    level = logging.getLevelName(settings.level.strip().upper())
    if not isinstance(level, int):
        raise ConfigurationError(f"알 수 없는 로그 레벨: {settings.level}")
    return level


def _build_handler(settings: LogSettings) -> logging.Handler:
    output = settings.output.strip().lower()
    if output == "stdout":
        return logging.StreamHandler(sys.stdout)
    if output == "stderr":
        return logging.StreamHandler(sys.stderr)
    if output == "file":
        file_config = settings.file_config
        path = Path(file_config.filename)
        path.parent.mkdir(parents=True, exist_ok=True)
        return RetentionRotatingFileHandler(
            path,
            max_bytes=file_config.max_size * 1024 * 1024,
            backup_count=file_config.max_backups,
            max_age_days=file_config.max_age,
            compress=file_config.compress,
        )
    raise ConfigurationError(f"알 수 없는 로그 출력 대상: {settings.output}")


def _build_formatter(settings: LogSettings) -> logging.Formatter:
    fmt = settings.format.strip().lower()
    if fmt == "json":
        return JsonLogFormatter(
            settings.default_fields,
            enable_caller=settings.enable_caller,
            enable_stacktrace=settings.enable_stacktrace,
        )
    if fmt == "console":
        return logging.Formatter(
            CONSOLE_CALLER_FORMAT if settings.enable_caller else CONSOLE_FORMAT
        )
    raise ConfigurationError(f"알 수 없는 로그 포맷: {settings.format}")


def configure_logging(settings: LogSettings) -> logging.Handler:
    """루트 로거에 설정 적용 (기존 핸들러 교체)

    Returns:
        logging.Handler: 새로 설치된 핸들러

    Raises:
        ConfigurationError: 알 수 없는 레벨/포맷/출력 대상
    """
    level = _resolve_level(settings)
    handler = _build_handler(settings)
    handler.setFormatter(_build_formatter(settings))
    if settings.enable_sampling:
        handler.addFilter(
            SamplingFilter(settings.sampling_initial, settings.sampling_thereafter)
        )

    logging.basicConfig(level=level, handlers=[handler], force=True)
    logger.debug(
        f"[LogSettings] 로깅 설정 적용: level={settings.level}, "
        f"format={settings.format}, output={settings.output}"
    )
    return handler


def attach_log_settings(
    engine,
    select: Callable[[Any], LogSettings],
    path: str = "",
) -> None:
    """엔진 설정의 로깅 섹션을 즉시 적용하고, 변경 시 다시 적용

    Args:
        engine: Engine 인스턴스
        select: 설정 모델 → LogSettings
        path: 감시할 변경 경로 접두사 (빈 문자열이면 모든 변경)
    """
    configure_logging(select(engine.get_data()))

    def _reapply(event: SourceEvent, changes: list[ChangeItem]) -> None:
        if path and not any(
            c.path == path or c.path.startswith(f"{path}.") for c in changes
        ):
            return
        try:
            configure_logging(select(engine.get_data()))
        except ConfigurationError as e:
            logger.error(f"[LogSettings] 로깅 설정 재적용 실패, 기존 설정 유지: {e}")

    engine.on_change(_reapply)
