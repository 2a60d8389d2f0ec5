import asyncio

import pytest
from anyio import wait_all_tasks_blocked

from pterogate.console_events import (
    AuthSuccess,
    ConsoleOutput,
    LogBacklog,
    StatsUpdate,
    StatusChanged,
    TokenExpired,
    encode_event,
    parse_frame,
)
from pterogate.console_session import ConsoleSession, ConsoleState, derive_origin, with_token
from pterogate.errors import (
    NotConnectedError,
    ProtocolError,
    TokenExpiredError,
    TokenExpiringError,
    TransportError,
)

pytestmark = pytest.mark.anyio

SOCKET_URL = "wss://node.example:8080/api/servers/s1/ws"


def _session(connector, observer, **kwargs) -> ConsoleSession:
    return ConsoleSession(
        SOCKET_URL, "tok-1", "s1", observer,
        origin="https://panel.example/", connector=connector, **kwargs,
    )


async def _open(connector, observer) -> ConsoleSession:
    session = _session(connector, observer)
    await session.connect()
    return session


# --- Frame decoding ---


def test_parse_frame_vocabulary():
    assert parse_frame('{"event":"console output","args":["\\u001b[33mhi"]}') == ConsoleOutput("\x1b[33mhi")
    assert parse_frame('{"event":"logs","args":[["a","b"]]}') == LogBacklog(("a", "b"))
    assert parse_frame('{"event":"logs","args":["c"]}') == LogBacklog(("c",))
    assert parse_frame('{"event":"status","args":["running"]}') == StatusChanged("running")
    assert parse_frame('{"event":"stats","args":["{\\"cpu\\":1}"]}') == StatsUpdate('{"cpu":1}')
    assert parse_frame('{"event":"token expired"}') == TokenExpired()
    assert parse_frame('{"event":"auth success"}') == AuthSuccess()
    assert parse_frame('{"event":"daemon message","args":["x"]}') is None
    assert parse_frame('{"event":"console output","args":[42]}') is None


def test_parse_frame_rejects_malformed_envelopes():
    with pytest.raises(ProtocolError):
        parse_frame("not json")
    with pytest.raises(ProtocolError):
        parse_frame('{"args":[]}')


def test_status_annotation():
    assert StatusChanged("offline").annotation == "[Server status: offline]"


def test_encode_event():
    assert encode_event("send logs", None) == '{"event":"send logs","args":[null]}'


def test_url_helpers():
    assert with_token("wss://n/ws", "a b") == "wss://n/ws?token=a+b"
    assert with_token("wss://n/ws?x=1", "t") == "wss://n/ws?x=1&token=t"
    assert derive_origin("wss://node.example:8080/api/servers/s1/ws") == "https://node.example:8080"


# --- Handshake ---


async def test_connect_handshake(connector, observer):
    session = await _open(connector, observer)
    try:
        uri, kwargs = connector.calls[0]
        assert uri == f"{SOCKET_URL}?token=tok-1"
        assert kwargs["origin"] == "https://panel.example"
        assert kwargs["user_agent_header"].startswith("Mozilla/5.0")
        assert kwargs["open_timeout"] == 10.0
        assert connector.socket.sent[0] == {"event": "auth", "args": ["tok-1"]}
        assert session.state is ConsoleState.CONNECTED
        assert session.is_connected
    finally:
        await session.close()


async def test_connect_failure_leaves_session_disconnected(connector, observer):
    connector.error = OSError("refused")
    session = _session(connector, observer)
    with pytest.raises(TransportError):
        await session.connect()
    assert session.state is ConsoleState.DISCONNECTED
    assert connector.sockets == []


async def test_commands_require_connection(connector, observer):
    session = _session(connector, observer)
    with pytest.raises(NotConnectedError):
        await session.send_command("say hi")
    with pytest.raises(NotConnectedError):
        await session.set_power_state("start")


async def test_outbound_events(connector, observer):
    session = await _open(connector, observer)
    await session.request_logs()
    await session.send_command("say hi")
    await session.set_power_state("restart")
    await session.close()

    assert connector.socket.sent == [
        {"event": "auth", "args": ["tok-1"]},
        {"event": "send logs", "args": [None]},
        {"event": "send command", "args": ["say hi"]},
        {"event": "set state", "args": ["restart"]},
    ]


async def test_request_logs_failure_is_reported_not_raised(connector, observer):
    session = await _open(connector, observer)
    connector.socket.closed = True
    await session.request_logs()
    assert len(observer.errors) == 1
    assert isinstance(observer.errors[0], TransportError)
    assert session.is_connected
    await session.close()


# --- Read loop ---


async def test_request_logs_after_session_ended_is_reported(connector, observer):
    session = await _open(connector, observer)
    connector.socket.push({"event": "token expired", "args": []})
    await wait_all_tasks_blocked()

    await session.request_logs()

    assert [type(e) for e in observer.errors] == [TokenExpiredError, NotConnectedError]
    assert connector.socket.sent == [{"event": "auth", "args": ["tok-1"]}]


async def test_logs_list_and_string_shapes(connector, observer):
    session = await _open(connector, observer)
    connector.socket.push({"event": "logs", "args": [["a", "b"]]})
    await wait_all_tasks_blocked()
    assert observer.outputs == ["a", "b"]

    connector.socket.push({"event": "logs", "args": ["c"]})
    await wait_all_tasks_blocked()
    assert observer.outputs == ["a", "b", "c"]
    await session.close()


async def test_output_status_and_ignored_events(connector, observer):
    session = await _open(connector, observer)
    socket = connector.socket
    socket.push({"event": "auth success", "args": []})
    socket.push({"event": "stats", "args": ['{"memory_bytes":1}']})
    socket.push({"event": "console output", "args": ["\x1b[32m[INFO] Done"]})
    socket.push({"event": "status", "args": ["running"]})
    socket.push({"event": "install output", "args": ["ignored"]})
    await wait_all_tasks_blocked()

    assert observer.outputs == ["\x1b[32m[INFO] Done", "[Server status: running]"]
    assert observer.errors == []
    await session.close()


async def test_token_expiring_is_a_warning(connector, observer):
    session = await _open(connector, observer)
    connector.socket.push({"event": "token expiring", "args": []})
    await wait_all_tasks_blocked()
    assert len(observer.errors) == 1
    assert isinstance(observer.errors[0], TokenExpiringError)
    assert session.is_connected
    await session.close()


async def test_token_expired_ends_the_session(connector, observer):
    session = await _open(connector, observer)
    socket = connector.socket
    socket.push({"event": "token expired", "args": []})
    socket.push({"event": "console output", "args": ["late line"]})
    await wait_all_tasks_blocked()

    assert session.state is ConsoleState.DISCONNECTED
    assert not session.is_connected
    assert len(observer.errors) == 1
    assert isinstance(observer.errors[0], TokenExpiredError)
    assert observer.outputs == []
    assert socket.close_codes == [1000]

    with pytest.raises(NotConnectedError):
        await session.send_command("list")
    await session.close()


async def test_malformed_frame_is_reported_and_skipped(connector, observer):
    session = await _open(connector, observer)
    connector.socket.push("{{{")
    connector.socket.push({"event": "console output", "args": ["after"]})
    await wait_all_tasks_blocked()

    assert [type(e) for e in observer.errors] == [ProtocolError]
    assert observer.outputs == ["after"]
    assert session.is_connected
    await session.close()


async def test_read_error_is_reported_then_session_closes(connector, observer):
    session = await _open(connector, observer)
    connector.socket.push(OSError("connection reset"))
    await wait_all_tasks_blocked()

    assert len(observer.errors) == 1
    assert isinstance(observer.errors[0], TransportError)
    assert session.state is ConsoleState.DISCONNECTED


async def test_close_is_idempotent_and_silent(connector, observer):
    session = await _open(connector, observer)
    await session.close()
    await session.close()

    assert connector.socket.close_codes == [1000]
    assert observer.errors == []
    assert session.state is ConsoleState.DISCONNECTED


async def test_session_can_be_reopened_after_close(connector, observer):
    session = await _open(connector, observer)
    await session.close()
    await session.connect()
    assert len(connector.sockets) == 2
    assert session.is_connected
    await session.close()


async def test_observer_failure_does_not_stop_the_read_loop(connector):
    class Flaky:
        def __init__(self):
            self.outputs = []

        def on_output(self, line):
            if line == "boom":
                raise RuntimeError("observer bug")
            self.outputs.append(line)

        def on_error(self, error):
            pass

    flaky = Flaky()
    session = await _open(connector, flaky)
    connector.socket.push({"event": "console output", "args": ["boom"]})
    connector.socket.push({"event": "console output", "args": ["ok"]})
    await wait_all_tasks_blocked()
    assert flaky.outputs == ["ok"]
    await session.close()


async def test_close_cancels_a_blocked_reader(connector, observer):
    session = await _open(connector, observer)
    reader = session._reader
    await session.close()
    await asyncio.sleep(0)
    assert reader.done()
