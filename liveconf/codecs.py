"""
설정 포맷 코덱

JSON / YAML / TOML 문서와 dict 간 변환. 루트는 항상 dict.
"""

import json
import tomllib
from typing import Any

import tomli_w
import yaml

from .errors import DecodeError, UnsupportedFormatError
from .types import ConfigFormat


def encode(data: dict[str, Any], fmt: ConfigFormat) -> bytes:
    """dict를 포맷에 맞춰 직렬화

    TOML은 null을 표현할 수 없으므로 None 값은 생략됩니다.
    """
    if fmt == ConfigFormat.JSON:
        return json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8")
    if fmt == ConfigFormat.YAML:
        text = yaml.safe_dump(
            data, default_flow_style=False, allow_unicode=True, sort_keys=False
        )
        return text.encode("utf-8")
    if fmt == ConfigFormat.TOML:
        return tomli_w.dumps(_strip_none(data)).encode("utf-8")
    raise UnsupportedFormatError(f"지원하지 않는 설정 포맷: {fmt}")


def decode(raw: bytes | str, fmt: ConfigFormat) -> dict[str, Any]:
    """직렬화된 문서를 dict로 파싱

    빈 문서는 빈 dict로 취급합니다.

    Raises:
        DecodeError: 파싱 실패 또는 루트가 dict가 아님
    """
    try:
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        if not text.strip():
            return {}
        if fmt == ConfigFormat.JSON:
            data = json.loads(text)
        elif fmt == ConfigFormat.YAML:
            data = yaml.safe_load(text)
        elif fmt == ConfigFormat.TOML:
            data = tomllib.loads(text)
        else:
            raise UnsupportedFormatError(f"지원하지 않는 설정 포맷: {fmt}")
    except (json.JSONDecodeError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
        raise DecodeError(f"{fmt.value} 설정 파싱 실패: {e}") from e
    except UnicodeDecodeError as e:
        raise DecodeError(f"설정 인코딩 오류 (UTF-8 아님): {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise DecodeError(f"설정 루트는 dict여야 합니다. 받은 타입: {type(data).__name__}")
    return data


def _strip_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _strip_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_strip_none(v) for v in value if v is not None]
    return value
