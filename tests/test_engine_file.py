"""
Engine 파일 소스 통합 테스트
"""

import asyncio
import json
import logging

import pytest
import yaml

from liveconf import (
    ChangeItem,
    Engine,
    EngineClosedError,
    EngineOptions,
    EngineState,
    EtcdLocation,
    EventOp,
    LiveConfError,
    SourceConflictError,
    SourceKind,
    UnsupportedFormatError,
)
from tests.helpers import AppConfig, AppSection, RecordingObserver, wait_until


def _write_yaml(path, data) -> None:
    path.write_text(yaml.safe_dump(data))


class TestEngineCreate:
    """엔진 생성 테스트"""

    @pytest.mark.asyncio
    async def test_bind_creates_default_file(self, config_dir, default_config):
        path = config_dir / "app.yaml"

        engine = await Engine.create(default_config, files=[path], environ={})
        try:
            assert engine.state == EngineState.WATCHING
            assert engine.descriptor.kind == SourceKind.FILE
            assert engine.get_data() == default_config
            assert yaml.safe_load(path.read_text())["app"]["port"] == 8080
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_source_conflict(self, config_dir, default_config):
        """파일 + etcd 동시 지정 → 생성 실패"""
        with pytest.raises(SourceConflictError):
            await Engine.create(
                default_config, files=[config_dir / "app.yaml"], etcd=[EtcdLocation()]
            )

    @pytest.mark.asyncio
    async def test_unsupported_extension(self, config_dir, default_config):
        with pytest.raises(UnsupportedFormatError):
            await Engine.create(default_config, files=[config_dir / "app.ini"])

    @pytest.mark.asyncio
    async def test_invalid_file_fails_create(self, config_dir, default_config):
        path = config_dir / "app.json"
        path.write_text("{broken")

        with pytest.raises(LiveConfError):
            await Engine.create(default_config, files=[path], environ={})

    @pytest.mark.asyncio
    async def test_options_object(self, config_dir, default_config):
        options = EngineOptions(files=[config_dir / "app.toml"], watch=False)

        engine = await Engine.create(default_config, options, environ={})
        try:
            assert engine.state == EngineState.BOUND
        finally:
            await engine.close()

    @pytest.mark.asyncio
    async def test_options_and_kwargs_rejected(self, config_dir, default_config):
        options = EngineOptions(files=[config_dir / "app.toml"])

        with pytest.raises(TypeError):
            Engine(default_config, options, watch=False)

    @pytest.mark.asyncio
    async def test_context_manager(self, config_dir, default_config):
        async with Engine(default_config, files=[config_dir / "app.yaml"], environ={}) as engine:
            assert engine.get_data().app.port == 8080

        assert engine.closed is True
        assert engine.state == EngineState.CLOSED


class TestEngineGetData:
    """get_data 테스트"""

    @pytest.mark.asyncio
    async def test_returns_copy(self, config_dir, default_config):
        """반환값을 수정해도 스냅샷은 그대로"""
        async with Engine(
            default_config, files=[config_dir / "app.yaml"], watch=False, environ={}
        ) as engine:
            data = engine.get_data()
            data.app.port = 1
            data.app.tags.append("mutated")

            fresh = engine.get_data()
            assert fresh.app.port == 8080
            assert fresh.app.tags == ["a", "b"]

    @pytest.mark.asyncio
    async def test_not_started(self, config_dir, default_config):
        engine = Engine(default_config, files=[config_dir / "app.yaml"])

        with pytest.raises(LiveConfError):
            engine.get_data()
        await engine.close()


class TestEngineHotReload:
    """파일 변경 → 리로드 → 옵저버 통지"""

    @pytest.mark.asyncio
    async def test_external_write_notifies_observer(self, config_dir, default_config, recorder):
        """app.port 8080 → 9000 외부 수정"""
        path = config_dir / "app.yaml"
        engine = await Engine.create(
            default_config,
            files=[path],
            debounce_seconds=0,
            settle_seconds=0.05,
            environ={},
        )
        engine.on_change(recorder)
        try:
            await asyncio.sleep(0.2)
            data = yaml.safe_load(path.read_text())
            data["app"]["port"] = 9000
            _write_yaml(path, data)

            assert await wait_until(lambda: "app.port" in recorder.paths)
        finally:
            await engine.close()

        event, changes = next(
            (e, c) for e, c in recorder.calls if any(i.path == "app.port" for i in c)
        )
        assert ChangeItem("app.port", 8080, 9000) in changes
        assert event.source == SourceKind.FILE
        assert event.op == EventOp.WRITE

    @pytest.mark.asyncio
    async def test_trigger_reload(self, config_dir, default_config, recorder):
        path = config_dir / "app.yaml"
        async with Engine(default_config, files=[path], watch=False, environ={}) as engine:
            engine.on_change(recorder)
            _write_yaml(path, {"app": {"port": 9000}, "server": {"host": "0.0.0.0"}})

            assert await engine.trigger_reload() is True

            assert engine.get_data().app.port == 9000
            assert recorder.paths == ["app.port", "server.host"]

    @pytest.mark.asyncio
    async def test_debounce_window(self, config_dir, default_config, recorder):
        """윈도우 안의 두 번째 신호는 버림"""
        path = config_dir / "app.yaml"
        async with Engine(
            default_config, files=[path], watch=False, debounce_seconds=0.5, environ={}
        ) as engine:
            engine.on_change(recorder)

            _write_yaml(path, {"app": {"port": 1}})
            assert await engine.trigger_reload() is True

            _write_yaml(path, {"app": {"port": 2}})
            assert await engine.trigger_reload() is False

            assert engine.get_data().app.port == 1
            assert len(recorder.calls) == 1

    @pytest.mark.asyncio
    async def test_no_change_no_dispatch(self, config_dir, default_config, recorder):
        path = config_dir / "app.yaml"
        async with Engine(
            default_config, files=[path], watch=False, debounce_seconds=0, environ={}
        ) as engine:
            engine.on_change(recorder)

            assert await engine.trigger_reload() is True
            assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_invalid_content_keeps_snapshot(
        self, config_dir, default_config, recorder, caplog
    ):
        """잘못된 내용 → 로깅 후 기존 스냅샷 유지"""
        path = config_dir / "app.json"
        async with Engine(
            default_config, files=[path], watch=False, debounce_seconds=0, environ={}
        ) as engine:
            engine.on_change(recorder)
            path.write_text("{not json")

            with caplog.at_level(logging.ERROR, logger="liveconf.engine"):
                assert await engine.trigger_reload() is False

            assert engine.get_data() == default_config
            assert recorder.calls == []
            assert "[파싱 실패]" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_file_keeps_snapshot(self, config_dir, default_config):
        path = config_dir / "app.yaml"
        async with Engine(
            default_config, files=[path], watch=False, debounce_seconds=0, environ={}
        ) as engine:
            path.unlink()

            assert await engine.trigger_reload() is False
            assert engine.get_data() == default_config


class TestEngineUpdate:
    """update 테스트"""

    @pytest.mark.asyncio
    async def test_update_persists_and_notifies(self, config_dir, default_config, recorder):
        path = config_dir / "app.json"
        async with Engine(default_config, files=[path], watch=False, environ={}) as engine:
            engine.on_change(recorder)
            new_value = AppConfig(app=AppSection(port=9000))

            await engine.update(new_value)

            assert engine.get_data().app.port == 9000
            assert json.loads(path.read_text())["app"]["port"] == 9000
            assert len(recorder.calls) == 1
            event, changes = recorder.calls[0]
            assert event.op == EventOp.UPDATE
            assert changes == [ChangeItem("app.port", 8080, 9000)]

            # 입력 객체를 나중에 바꿔도 스냅샷에 영향 없음
            new_value.app.port = 1
            assert engine.get_data().app.port == 9000

    @pytest.mark.asyncio
    async def test_own_write_not_reported_twice(self, config_dir, default_config, recorder):
        """update 직후 파일 감시 이벤트로 다시 통지되지 않음"""
        path = config_dir / "app.yaml"
        async with Engine(
            default_config, files=[path], settle_seconds=0.05, environ={}
        ) as engine:
            engine.on_change(recorder)
            await asyncio.sleep(0.1)

            await engine.update(AppConfig(server={"port": 1234}))
            await asyncio.sleep(0.3)

        assert len(recorder.calls) == 1
        assert recorder.paths == ["server.port"]

    @pytest.mark.asyncio
    async def test_update_same_value(self, config_dir, default_config, recorder):
        async with Engine(
            default_config, files=[config_dir / "app.yaml"], watch=False, environ={}
        ) as engine:
            engine.on_change(recorder)

            await engine.update(AppConfig())

            assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_update_wrong_type(self, config_dir, default_config):
        async with Engine(
            default_config, files=[config_dir / "app.yaml"], watch=False, environ={}
        ) as engine:
            with pytest.raises(TypeError):
                await engine.update(AppSection())

    @pytest.mark.asyncio
    async def test_persist_failure_keeps_snapshot(self, config_dir, default_config, recorder):
        """저장 실패 → 예외 전파, 기존 스냅샷 유지"""
        path = config_dir / "app.yaml"
        async with Engine(default_config, files=[path], watch=False, environ={}) as engine:
            engine.on_change(recorder)
            path.unlink()
            path.mkdir()

            with pytest.raises(LiveConfError):
                await engine.update(AppConfig(app=AppSection(port=1)))

            assert engine.get_data() == default_config
            assert recorder.calls == []


class TestEngineClose:
    """종료 후 동작"""

    @pytest.mark.asyncio
    async def test_closed_engine(self, config_dir, default_config, recorder):
        engine = await Engine.create(default_config, files=[config_dir / "app.yaml"], environ={})

        await engine.close()
        await engine.close()

        assert engine.state == EngineState.CLOSED
        with pytest.raises(EngineClosedError):
            engine.get_data()
        with pytest.raises(EngineClosedError):
            await engine.update(AppConfig())
        engine.on_change(recorder)
        assert await engine.trigger_reload() is False
        assert recorder.calls == []

    @pytest.mark.asyncio
    async def test_close_inside_observer(self, config_dir, default_config):
        """옵저버 안에서 close 호출해도 교착 없음"""
        path = config_dir / "app.yaml"
        engine = await Engine.create(default_config, files=[path], watch=False, environ={})
        closed_inside = []

        async def closer(event, changes):
            await engine.close()
            closed_inside.append(engine.closed)

        engine.on_change(closer)
        await asyncio.wait_for(engine.update(AppConfig(app=AppSection(port=1))), timeout=5)

        assert closed_inside == [True]
        assert engine.state == EngineState.CLOSED

    @pytest.mark.asyncio
    async def test_no_dispatch_after_close(self, config_dir, default_config, recorder):
        path = config_dir / "app.yaml"
        engine = await Engine.create(
            default_config, files=[path], debounce_seconds=0, settle_seconds=0.05, environ={}
        )
        engine.on_change(recorder)
        await engine.close()

        _write_yaml(path, {"app": {"port": 9000}})
        await asyncio.sleep(0.3)

        assert recorder.calls == []
