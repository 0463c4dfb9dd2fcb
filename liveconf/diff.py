"""
설정 구조 비교 (StructDiff)

두 설정 스냅샷을 재귀적으로 비교하여 경로 기반 변경 목록을 생성합니다.

비교 규칙:
- 모델(BaseModel): 필드 선언 순서대로 재귀. 경로는 alias 우선, 없으면 필드명.
  extra="allow" 모델의 추가 필드(model_extra)는 선언 필드 뒤에 dict 규칙으로 비교
- dict: 키 합집합. 추가 → (None, 새 값), 삭제 → (이전 값, None)
- list/tuple: 길이가 다르면 컬렉션 전체를 하나의 변경으로 보고,
  길이가 같으면 같은 인덱스끼리 비교 (path[i])
- 타입 불일치 / None 여부 불일치: 현재 경로에서 값 전체를 하나의 변경으로 보고 재귀 중단

리스트 중간 삽입·삭제는 정렬(alignment)하지 않고 리스트 전체 변경 하나로 보고합니다.
"""

from functools import lru_cache
from typing import Any

from pydantic import BaseModel

from .types import ChangeItem


@lru_cache(maxsize=None)
def field_paths(model_cls: type[BaseModel]) -> tuple[tuple[str, str], ...]:
    """모델 클래스의 (속성명, 경로 키) 목록

    클래스당 한 번만 계산됩니다. exclude=True 필드와 private 속성은 제외.

    Args:
        model_cls: 설정 모델 클래스

    Returns:
        선언 순서의 (attribute, key) 튜플
    """
    paths = []
    for name, info in model_cls.model_fields.items():
        if info.exclude:
            continue
        key = info.serialization_alias or info.alias or name
        paths.append((name, key))
    return tuple(paths)


def join_path(base: str, key: Any) -> str:
    """부모 경로에 키를 점(.)으로 연결"""
    return f"{base}.{key}" if base else str(key)


def find_changes(old: Any, new: Any, base_path: str = "") -> list[ChangeItem]:
    """두 값의 차이를 변경 항목 목록으로 반환

    순수 함수이며 같은 입력에 대해 항상 같은 순서의 결과를 냅니다.

    Args:
        old: 이전 값
        new: 새 값
        base_path: 현재 위치 경로 (빈 문자열이면 최상위)

    Returns:
        list[ChangeItem]: 변경이 없으면 빈 리스트
    """
    if old is None and new is None:
        return []
    if old is None:
        return [ChangeItem(base_path, None, new)]
    if new is None:
        return [ChangeItem(base_path, old, None)]

    if type(old) is not type(new):
        return [ChangeItem(base_path, old, new)]

    if isinstance(old, BaseModel):
        return _diff_model(old, new, base_path)
    if isinstance(old, dict):
        return _diff_mapping(old, new, base_path)
    if isinstance(old, (list, tuple)):
        return _diff_sequence(old, new, base_path)

    if old != new:
        return [ChangeItem(base_path, old, new)]
    return []


def _diff_model(old: BaseModel, new: BaseModel, path: str) -> list[ChangeItem]:
    if old == new:
        return []

    changes: list[ChangeItem] = []
    for attr, key in field_paths(type(old)):
        changes.extend(
            find_changes(getattr(old, attr), getattr(new, attr), join_path(path, key))
        )
    changes.extend(_diff_mapping(old.model_extra or {}, new.model_extra or {}, path))
    return changes


def _diff_mapping(old: dict, new: dict, path: str) -> list[ChangeItem]:
    if old == new:
        return []

    # 이전 키 순서 → 새로 추가된 키 순서
    keys = list(old)
    keys.extend(k for k in new if k not in old)

    changes: list[ChangeItem] = []
    for key in keys:
        key_path = join_path(path, key)
        if key not in old:
            changes.append(ChangeItem(key_path, None, new[key]))
        elif key not in new:
            changes.append(ChangeItem(key_path, old[key], None))
        else:
            changes.extend(find_changes(old[key], new[key], key_path))
    return changes


def _diff_sequence(old: list | tuple, new: list | tuple, path: str) -> list[ChangeItem]:
    if old == new:
        return []

    if len(old) != len(new):
        return [ChangeItem(path, old, new)]

    changes: list[ChangeItem] = []
    for index, (old_item, new_item) in enumerate(zip(old, new)):
        changes.extend(find_changes(old_item, new_item, f"{path}[{index}]"))

    # 원소 단위 차이가 없는데 전체가 다르면 컬렉션 전체 변경으로 기록
    if not changes:
        changes.append(ChangeItem(path, old, new))
    return changes
