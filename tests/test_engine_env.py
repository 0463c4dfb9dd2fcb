"""
Engine 환경변수 소스 테스트
"""

import os
from unittest.mock import patch

import pytest
from pydantic import BaseModel, Field

from liveconf import Engine, EngineState, SourceKind
from tests.helpers import AppConfig


class TestEnvOnlyEngine:
    """환경변수 전용 모드"""

    @pytest.mark.asyncio
    async def test_env_value_applied(self, default_config):
        """APP_SERVER_PORT=5000 → server.port == 5000"""
        with patch.dict(os.environ, {"APP_SERVER_PORT": "5000"}):
            engine = await Engine.create(default_config, env_only=True)
        try:
            assert engine.get_data().server.port == 5000
            assert engine.get_data().app.port == 8080
            assert engine.descriptor.kind == SourceKind.ENV
            # 감시자 없음
            assert engine.state == EngineState.BOUND
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_typed_coercion(self, default_config):
        environ = {
            "SVC_APP_DEBUG": "true",
            "SVC_APP_RATIO": "0.9",
            "SVC_APP_NAME": "42",
            "SVC_FEATURES_SEARCH": "false",
        }

        async with Engine(default_config, env_only=True, env_prefix="SVC", environ=environ) as engine:
            config = engine.get_data()

        assert config.app.debug is True
        assert config.app.ratio == 0.9
        assert config.app.name == "42"
        assert config.features == {"search": False}

    @pytest.mark.asyncio
    async def test_update_without_persistence(self, default_config, recorder):
        """환경변수 전용 모드의 update는 메모리만 교체"""
        async with Engine(default_config, env_only=True, environ={}) as engine:
            engine.on_change(recorder)

            await engine.update(AppConfig(server={"port": 1}))

            assert engine.get_data().server.port == 1
            assert recorder.paths == ["server.port"]


class TestFileWithEnvOverlay:
    """파일 소스 + 환경변수 오버레이"""

    @pytest.mark.asyncio
    async def test_env_beats_file(self, config_dir, default_config):
        path = config_dir / "app.yaml"
        path.write_text("app:\n  port: 7000\n")

        with patch.dict(os.environ, {"APP_APP_PORT": "7100"}):
            async with Engine(default_config, files=[path], watch=False) as engine:
                assert engine.get_data().app.port == 7100

    @pytest.mark.asyncio
    async def test_env_reapplied_on_reload(self, config_dir, default_config):
        """리로드 후에도 환경변수 값 유지"""
        path = config_dir / "app.yaml"
        environ = {"APP_SERVER_HOST": "env-host"}

        async with Engine(
            default_config, files=[path], watch=False, debounce_seconds=0, environ=environ
        ) as engine:
            path.write_text("server:\n  host: file-host\n  port: 1\n")
            await engine.trigger_reload()

            config = engine.get_data()

        assert config.server.host == "env-host"
        assert config.server.port == 1


class _NamedServer(BaseModel):
    name: str | None = None
    port: int = 8080


class _NamedConfig(BaseModel):
    server: _NamedServer = Field(default_factory=_NamedServer)


class TestDeclaredFieldTypes:
    """선언 타입 기준 환경변수 변환"""

    @pytest.mark.asyncio
    async def test_numeric_text_for_optional_str_field(self):
        """str | None 필드에 숫자 형태 값 → 문자열로 바인딩"""
        environ = {"APP_SERVER_NAME": "123", "APP_SERVER_PORT": "9000"}

        engine = await Engine.create(_NamedConfig(), env_only=True, environ=environ)
        try:
            config = engine.get_data()
        finally:
            await engine.close()

        assert config.server.name == "123"
        assert config.server.port == 9000

    @pytest.mark.asyncio
    async def test_boolean_text_for_optional_str_field(self):
        engine = await Engine.create(
            _NamedConfig(), env_only=True, environ={"APP_SERVER_NAME": "true"}
        )
        try:
            assert engine.get_data().server.name == "true"
        finally:
            await engine.close()
