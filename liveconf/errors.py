"""
에러 분류 시스템

설정 엔진의 실패를 카테고리로 구분하여, 생성 시점 에러는 호출자에게 전파하고
백그라운드 리로드 에러는 카테고리와 함께 로깅하는 데 활용.
"""

import json
import tomllib
from enum import Enum

import httpx
import yaml
from pydantic import ValidationError


class ErrorCategory(str, Enum):
    """에러 카테고리"""

    SOURCE_CONFLICT = "source_conflict"  # 소스 종류 혼용
    IO = "io"  # 파일/KV 읽기·쓰기 실패
    DECODE = "decode"  # 잘못된 설정 내용, 타입 불일치
    UNSUPPORTED_FORMAT = "unsupported_format"  # 알 수 없는 포맷/확장자
    CLOSED = "closed"  # 종료된 엔진 사용
    CONFIGURATION = "configuration"  # 잘못된 옵션 값
    UNKNOWN = "unknown"


class LiveConfError(Exception):
    """설정 엔진 기본 에러"""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, category: ErrorCategory | None = None):
        super().__init__(message)
        if category is not None:
            self.category = category


class SourceConflictError(LiveConfError):
    """두 가지 이상의 소스 종류를 동시에 지정"""

    category = ErrorCategory.SOURCE_CONFLICT


class SourceIOError(LiveConfError):
    """파일 또는 KV 스토어 입출력 실패"""

    category = ErrorCategory.IO


class DecodeError(LiveConfError):
    """설정 내용 파싱/검증 실패"""

    category = ErrorCategory.DECODE


class UnsupportedFormatError(LiveConfError):
    """지원하지 않는 포맷 또는 확장자"""

    category = ErrorCategory.UNSUPPORTED_FORMAT


class EngineClosedError(LiveConfError):
    """Close() 이후 엔진 사용"""

    category = ErrorCategory.CLOSED


class ConfigurationError(LiveConfError):
    """엔진 옵션 값 오류"""

    category = ErrorCategory.CONFIGURATION


_DECODE_ERRORS = (
    json.JSONDecodeError,
    yaml.YAMLError,
    tomllib.TOMLDecodeError,
    ValidationError,
    UnicodeDecodeError,
)

_IO_ERRORS = (OSError, httpx.HTTPError)


class ErrorClassifier:
    """에러 분류기"""

    @classmethod
    def classify(cls, error: Exception) -> ErrorCategory:
        """에러를 분류하여 카테고리 반환

        Args:
            error: 분류할 예외 객체

        Returns:
            ErrorCategory: 엔진 에러는 자체 카테고리, 라이브러리 에러는 타입 기반
        """
        if isinstance(error, LiveConfError):
            return error.category

        # 원인 예외까지 확인 (raise ... from e)
        cause = error.__cause__
        if isinstance(cause, LiveConfError):
            return cause.category

        if isinstance(error, _DECODE_ERRORS):
            return ErrorCategory.DECODE

        if isinstance(error, _IO_ERRORS):
            return ErrorCategory.IO

        return ErrorCategory.UNKNOWN

    @classmethod
    def format_message(cls, error: Exception) -> str:
        """에러 메시지 포맷팅

        Args:
            error: 포맷팅할 예외 객체

        Returns:
            str: 카테고리 라벨이 포함된 에러 메시지
        """
        category = cls.classify(error)
        label = {
            ErrorCategory.SOURCE_CONFLICT: "[소스 충돌]",
            ErrorCategory.IO: "[입출력 실패]",
            ErrorCategory.DECODE: "[파싱 실패]",
            ErrorCategory.UNSUPPORTED_FORMAT: "[지원하지 않는 포맷]",
            ErrorCategory.CLOSED: "[종료됨]",
            ErrorCategory.CONFIGURATION: "[옵션 오류]",
            ErrorCategory.UNKNOWN: "[분류되지 않음]",
        }
        return f"{label[category]} {type(error).__name__}: {error}"
