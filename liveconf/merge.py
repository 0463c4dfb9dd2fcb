"""
설정 deep-merge

병합 정책:
- dict + dict → 키 단위 재귀 병합
- 그 외 (list, 스칼라, 타입 불일치) → override 값으로 교체

입력은 변경하지 않습니다.
"""

from copy import deepcopy
from typing import Any


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """base 위에 override를 키 단위로 병합한 새 dict 반환

    Args:
        base: 기존 설정 (기본값 또는 앞선 소스)
        override: 우선순위가 높은 설정

    Returns:
        병합된 새 dict
    """
    result: dict[str, Any] = deepcopy(base)

    for key, override_value in override.items():
        base_value = result.get(key)

        if isinstance(base_value, dict) and isinstance(override_value, dict):
            result[key] = deep_merge(base_value, override_value)
        else:
            result[key] = deepcopy(override_value)

    return result
