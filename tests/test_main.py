from __future__ import annotations

import asyncio
import json
import logging
import signal

import pytest

from agent_sidecar import __version__, main as main_module
from agent_sidecar.broker import Broker
from agent_sidecar.settings import SidecarSettings
from tests.utils import PAUSE, FakeEngine, assistant, for_request, kinds, make_writer, wait_until


def test_version_flag(capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main_module.build_parser().parse_args(["--version"])

    assert excinfo.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_flags_override_log_settings() -> None:
    args = main_module.build_parser().parse_args(["--log-level", "debug", "--no-stderr-log"])

    settings = main_module.apply_args(SidecarSettings(), args)

    assert settings.log.level == logging.DEBUG
    assert settings.log.stderr is False


def test_bootstrap_failure_exits_with_one(monkeypatch) -> None:
    def _boom(settings):
        raise RuntimeError("no engine")

    monkeypatch.setattr(main_module, "default_engine", _boom)

    assert main_module.main([]) == 1


def test_graceful_run_exits_with_zero(monkeypatch) -> None:
    served = []

    async def _serve(settings, engine):
        served.append((settings, engine))

    monkeypatch.setattr(main_module, "default_engine", lambda settings: "engine")
    monkeypatch.setattr(main_module, "serve", _serve)

    assert main_module.main(["--log-level", "warning"]) == 0
    assert served[0][1] == "engine"
    assert served[0][0].log.level == logging.WARNING


def test_failure_inside_running_broker_is_logged(monkeypatch) -> None:
    async def _serve(settings, engine):
        raise RuntimeError("stdout went away")

    monkeypatch.setattr(main_module, "default_engine", lambda settings: "engine")
    monkeypatch.setattr(main_module, "serve", _serve)

    assert main_module.main([]) == 0


def test_default_engine_takes_history_limit() -> None:
    engine = main_module.default_engine(SidecarSettings(history_limit=3))

    assert engine._max_histories == 3


@pytest.mark.asyncio
async def test_sigterm_handler_drains_the_broker(monkeypatch) -> None:
    handlers = {}
    loop = asyncio.get_running_loop()
    monkeypatch.setattr(
        loop, "add_signal_handler", lambda sig, callback, *args: handlers.__setitem__(sig, (callback, args))
    )
    reader = asyncio.StreamReader()
    raw, out = make_writer()
    engine = FakeEngine(lambda text: [assistant("a"), PAUSE, assistant("b"), {"type": "result"}])
    broker = Broker(reader, out, engine)
    main_module._install_signal_handlers(broker)
    task = asyncio.create_task(broker.run())

    config = {"prompt": "hi", "apiKey": "sk-1", "cwd": "/work"}
    reader.feed_data((json.dumps({"type": "agent_request", "requestId": "r1", "config": config}) + "\n").encode())
    await wait_until(lambda: "response:a:False" in kinds(for_request(raw.lines(), "r1")))

    assert set(handlers) == {signal.SIGTERM, signal.SIGINT}
    callback, args = handlers[signal.SIGTERM]
    callback(*args)
    await wait_until(lambda: broker.draining)
    engine.release.set()
    await asyncio.wait_for(task, 2)

    assert kinds(for_request(raw.lines(), "r1"))[-3:] == ["error:Request aborted", "response::True", "request_complete"]
    assert broker.in_flight == 0
    assert engine.conversations[0].closed
