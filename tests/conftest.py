"""
Pytest 설정 및 공통 Fixture
"""

import logging

import pytest

from tests.helpers import AppConfig, FakeKVStore, RecordingObserver


@pytest.fixture
def default_config() -> AppConfig:
    """기본 설정 모델 인스턴스"""
    return AppConfig()


@pytest.fixture
def fake_kv() -> FakeKVStore:
    """빈 메모리 KV 스토어"""
    return FakeKVStore()


@pytest.fixture
def recorder() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def config_dir(tmp_path):
    """설정 파일 디렉토리"""
    path = tmp_path / "config"
    path.mkdir()
    return path


@pytest.fixture
def restore_root_logger():
    """configure_logging이 바꾼 루트 로거 복원"""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
