import asyncio
import json

import pytest
from conftest import FakeTransportFactory

from wa_bridge.__main__ import main
from wa_bridge.config import BridgeSettings
from wa_bridge.daemon import BridgeDaemon, load_transport_factory
from wa_bridge.models import ConnectionOpened, ConnectionState, MessagesReceived, RawMessage

fake_transport_factory = FakeTransportFactory()


def _settings(tmp_path, **overrides) -> BridgeSettings:
    values = {
        "auth_dir": str(tmp_path / "auth"),
        "users": "15551234567=user-42/proj-1",
        "mcp_config_path": str(tmp_path / "mcp.json"),
    }
    values.update(overrides)
    return BridgeSettings(**values)


def test_load_transport_factory_resolves_import_path():
    factory = load_transport_factory("test_daemon:fake_transport_factory")

    assert factory is fake_transport_factory


@pytest.mark.parametrize("target", ["", "test_daemon", "test_daemon:", ":factory"])
def test_load_transport_factory_rejects_malformed_paths(target):
    with pytest.raises(ValueError):
        load_transport_factory(target)


def test_load_transport_factory_rejects_non_callables():
    with pytest.raises(TypeError):
        load_transport_factory("sys:version")


def test_load_transport_factory_missing_attribute():
    with pytest.raises(AttributeError):
        load_transport_factory("test_daemon:no_such_factory")


@pytest.mark.asyncio
async def test_daemon_wires_components(tmp_path):
    factory = FakeTransportFactory()
    daemon = BridgeDaemon(_settings(tmp_path, claude_model="opus", dispatch_timeout_seconds=30), factory)

    assert daemon.dispatcher.model == "opus"
    assert daemon.dispatcher.timeout == 30.0
    assert daemon.supervisor.auth_dir == tmp_path / "auth"
    assert daemon.router.user_lookup is daemon.directory
    assert len(daemon.directory) == 1


@pytest.mark.asyncio
async def test_daemon_runs_until_shutdown(tmp_path):
    factory = FakeTransportFactory()
    script = tmp_path / "claude"
    script.write_text('#!/bin/sh\necho "Project X is idle"\n', encoding="utf-8")
    script.chmod(0o755)
    daemon = BridgeDaemon(_settings(tmp_path, claude_command=str(script)), factory)

    runner = asyncio.create_task(daemon.run_forever())
    for _ in range(50):
        if factory.sessions:
            break
        await asyncio.sleep(0.01)
    session = factory.latest
    await session.emit(ConnectionOpened(user_id="15557654321:1@s.whatsapp.net"))
    assert daemon.supervisor.state is ConnectionState.CONNECTED

    await session.emit(
        MessagesReceived((RawMessage(remote_address="15551234567@s.whatsapp.net", conversation="status?"),))
    )
    await daemon.supervisor.drain()
    assert session.sent == [("15551234567@s.whatsapp.net", "Project X is idle")]

    daemon.request_shutdown()
    await asyncio.wait_for(runner, timeout=5.0)
    await daemon.shutdown()

    assert session.closed is True
    assert session.logged_out is False


def test_main_version(capsys):
    main(["version"])

    assert capsys.readouterr().out.startswith("wa-bridge ")


def test_main_config_prints_redacted_settings(capsys, monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("WA_BRIDGE_MCP_SERVERS", '[{"name": "pm", "command": "node", "env": {"TOKEN": "s3cret"}}]')

    main(["config"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["claude_model"] == "sonnet"
    assert payload["mcp_servers"][0]["env"] == {"TOKEN": "***"}


def test_main_daemon_requires_transport_factory(monkeypatch, tmp_path, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("WA_BRIDGE_TRANSPORT_FACTORY", raising=False)

    with pytest.raises(SystemExit) as excinfo:
        main(["daemon"])

    assert excinfo.value.code == 2
    assert "transport_factory" in capsys.readouterr().err


