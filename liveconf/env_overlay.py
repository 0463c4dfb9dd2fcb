"""
환경변수 오버레이

설정 경로에서 환경변수 이름을 만들고, 설정된 값을 최우선으로 덮어씁니다.

이름 규칙: <PREFIX>_<PATH>  (경로의 "."는 "_"로, 전체 대문자)
    예) prefix="APP", path="server.port" → APP_SERVER_PORT

값 변환은 모델 필드의 선언 타입을 기준으로 합니다. 문자열을 받는 필드
(str, str | None 등)는 원본 문자열을 그대로 쓰고, 그 외에는
bool 리터럴 → int → float → 문자열 순으로 시도합니다.
"""

import logging
import os
import types
from collections.abc import Mapping
from copy import deepcopy
from functools import lru_cache
from typing import Annotated, Any, Literal, Union, get_args, get_origin

from pydantic import BaseModel

from .diff import field_paths

logger = logging.getLogger(__name__)

_UNION_TYPES = (Union, types.UnionType)
_MAPPING_ORIGINS = (dict, Mapping)


def env_var_name(prefix: str, path: str) -> str:
    """설정 경로 → 환경변수 이름"""
    name = path.replace(".", "_").upper()
    if prefix:
        return f"{prefix.upper()}_{name}"
    return name


def flatten_paths(data: Mapping[str, Any]) -> list[str]:
    """중첩 dict의 리프 경로 목록 (dict가 아닌 값은 모두 리프)"""
    return [".".join(parts) for parts in _leaf_keys(data)]


def _leaf_keys(data: Mapping[str, Any], parents: tuple[str, ...] = ()):
    for key, value in data.items():
        parts = (*parents, str(key))
        if isinstance(value, Mapping) and value:
            yield from _leaf_keys(value, parts)
        else:
            yield parts


@lru_cache(maxsize=None)
def _model_annotations(model_cls: type[BaseModel]) -> dict[str, Any]:
    """경로 키(alias 우선) → 선언 타입"""
    fields = model_cls.model_fields
    return {key: fields[attr].annotation for attr, key in field_paths(model_cls)}


def _unwrap(annotation: Any) -> Any:
    """Annotated / Optional 껍데기 제거 (None 외 타입이 하나일 때만)"""
    while True:
        origin = get_origin(annotation)
        if origin is Annotated:
            annotation = get_args(annotation)[0]
            continue
        if origin in _UNION_TYPES:
            members = [a for a in get_args(annotation) if a is not type(None)]
            if len(members) == 1:
                annotation = members[0]
                continue
        return annotation


@lru_cache(maxsize=None)
def leaf_annotation(model_cls: type[BaseModel], parts: tuple[str, ...]) -> Any:
    """모델 기준 리프 경로의 선언 타입 (알 수 없으면 None)

    중첩 모델과 dict[K, V]의 값 타입을 따라 내려갑니다.
    """
    annotation: Any = model_cls
    for part in parts:
        annotation = _unwrap(annotation)
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            fields = _model_annotations(annotation)
            if part not in fields:
                return None
            annotation = fields[part]
        elif get_origin(annotation) in _MAPPING_ORIGINS:
            args = get_args(annotation)
            annotation = args[1] if len(args) == 2 else Any
        else:
            return None
    return annotation


def accepts_str(annotation: Any) -> bool:
    """선언 타입이 문자열 값을 받는지"""
    if annotation is str:
        return True
    origin = get_origin(annotation)
    if origin is Annotated:
        return accepts_str(get_args(annotation)[0])
    if origin in _UNION_TYPES:
        return any(accepts_str(a) for a in get_args(annotation))
    if origin is Literal:
        return any(isinstance(a, str) for a in get_args(annotation))
    return isinstance(annotation, type) and issubclass(annotation, str)


def coerce_env_value(raw: str, current: Any = None, annotation: Any = None) -> Any:
    """환경변수 문자열을 필드 타입에 맞게 변환

    Args:
        raw: 환경변수 값
        current: 현재 값 (선언 타입을 모를 때 참고)
        annotation: 필드 선언 타입

    Returns:
        문자열 필드는 raw 그대로, 그 외에는 bool → int → float → raw
    """
    if annotation is not None and accepts_str(annotation):
        return raw
    if isinstance(current, str):
        return raw

    if raw in ("true", "false"):
        return raw == "true"

    try:
        return int(raw)
    except ValueError:
        pass

    try:
        return float(raw)
    except ValueError:
        pass

    return raw


def apply_env_overlay(
    data: dict[str, Any],
    prefix: str,
    environ: Mapping[str, str] | None = None,
    model_cls: type[BaseModel] | None = None,
) -> dict[str, Any]:
    """환경변수 값을 덮어쓴 새 dict 반환

    list/dict 리프는 덮어쓰지 않습니다. 빈 문자열 환경변수는 무시.

    Args:
        data: 병합된 설정 dict
        prefix: 환경변수 접두사
        environ: 환경변수 맵 (None이면 os.environ)
        model_cls: 값 변환 기준이 되는 설정 모델 클래스

    Returns:
        오버레이가 적용된 새 dict
    """
    env = os.environ if environ is None else environ
    result = deepcopy(data)

    for parts in list(_leaf_keys(result)):
        path = ".".join(parts)
        name = env_var_name(prefix, path)
        raw = env.get(name)
        if not raw:
            continue

        *parents, leaf = parts
        node = result
        for part in parents:
            node = node[part]

        current = node.get(leaf)
        if isinstance(current, (list, dict)):
            logger.debug(f"[EnvOverlay] 컬렉션 필드는 환경변수로 덮어쓰지 않음: {name}")
            continue

        annotation = leaf_annotation(model_cls, parts) if model_cls else None
        node[leaf] = coerce_env_value(raw, current, annotation)
        logger.debug(f"[EnvOverlay] 환경변수 적용: {name} → {path}")

    return result
