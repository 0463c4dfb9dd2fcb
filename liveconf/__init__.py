"""
liveconf - 핫 리로드 typed 설정 엔진

파일(JSON/YAML/TOML), 환경변수, etcd 소스를 typed 설정 모델에 바인딩하고
외부 변경 시 필드 단위 변경 목록을 옵저버에 전달합니다.
"""

from .binder import SourceBinder
from .codecs import decode, encode
from .diff import find_changes
from .engine import Engine
from .env_overlay import apply_env_overlay, coerce_env_value, env_var_name
from .errors import (
    ConfigurationError,
    DecodeError,
    EngineClosedError,
    ErrorCategory,
    ErrorClassifier,
    LiveConfError,
    SourceConflictError,
    SourceIOError,
    UnsupportedFormatError,
)
from .etcd_client import EtcdClient, KVStore
from .log_settings import LogFileSettings, LogSettings, attach_log_settings, configure_logging
from .merge import deep_merge
from .options import EngineOptions
from .registry import CallbackRegistry
from .types import (
    ChangeItem,
    ConfigFormat,
    EngineState,
    EtcdLocation,
    EventOp,
    SourceDescriptor,
    SourceEvent,
    SourceKind,
    TLSConfig,
)
from .watcher import WatchScheduler

__all__ = [
    # Engine
    "Engine",
    "EngineOptions",
    # Components
    "SourceBinder",
    "WatchScheduler",
    "CallbackRegistry",
    "EtcdClient",
    "KVStore",
    # Diff / Overlay
    "find_changes",
    "deep_merge",
    "apply_env_overlay",
    "coerce_env_value",
    "env_var_name",
    # Codecs
    "encode",
    "decode",
    # Errors
    "ErrorCategory",
    "ErrorClassifier",
    "LiveConfError",
    "SourceConflictError",
    "SourceIOError",
    "DecodeError",
    "UnsupportedFormatError",
    "EngineClosedError",
    "ConfigurationError",
    # Logging
    "LogSettings",
    "LogFileSettings",
    "configure_logging",
    "attach_log_settings",
    # Types
    "ChangeItem",
    "ConfigFormat",
    "EngineState",
    "EtcdLocation",
    "EventOp",
    "SourceDescriptor",
    "SourceEvent",
    "SourceKind",
    "TLSConfig",
]

__version__ = "0.1.0"
