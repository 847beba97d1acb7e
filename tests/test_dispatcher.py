import pytest

from async_wa_bridge.dispatcher import OutboundDispatcher
from async_wa_bridge.errors import NotConnected, RateLimitExceeded, SessionNotFound, TransportFailure
from async_wa_bridge.rate_limit import RateLimiter
from async_wa_bridge.session import SessionRecord, SessionStatus

from conftest import FakeTransport, ManualClock


@pytest.fixture
def limiter_clock():
    return ManualClock(0.0)


@pytest.fixture
def limiter(limiter_clock):
    return RateLimiter(30, 60, name="messages", clock=limiter_clock)


@pytest.fixture
def dispatcher(registry, limiter, metrics):
    return OutboundDispatcher(registry, limiter, metrics)


def add_session(registry, session_id="s1", status=SessionStatus.CONNECTED, connection="fake"):
    if connection == "fake":
        connection = FakeTransport(session_id, None, lambda event: None)
    record = SessionRecord(session_id=session_id, status=status, connection=connection)
    registry.put(session_id, record)
    return connection


@pytest.mark.asyncio
async def test_send_message_forwards_to_connection(dispatcher, registry, metrics):
    transport = add_session(registry)
    result = await dispatcher.send_message("s1", "+39 123 456 7890", "hello")
    assert transport.sent == [("391234567890@s.whatsapp.net", "hello")]
    assert result.to_dict() == {
        "messageId": "MSG-1",
        "to": "+39 123 456 7890",
        "jid": "391234567890@s.whatsapp.net",
    }
    assert 'wab_messages_sent_total{session_id="s1"} 1.0' in metrics.generate_latest().decode()


@pytest.mark.asyncio
async def test_unknown_session_is_rejected(dispatcher):
    with pytest.raises(SessionNotFound) as excinfo:
        await dispatcher.send_message("ghost", "391234567890", "hi")
    assert excinfo.value.status_code == 404


@pytest.mark.parametrize("status", [SessionStatus.QR_PENDING, SessionStatus.RECONNECTING, SessionStatus.FAILED])
@pytest.mark.asyncio
async def test_unready_session_does_not_consume_a_slot(dispatcher, registry, limiter, status):
    add_session(registry, status=status)
    with pytest.raises(NotConnected, match="not connected"):
        await dispatcher.send_message("s1", "391234567890", "hi")
    assert limiter.remaining("s1") == 30


@pytest.mark.asyncio
async def test_connected_record_without_handle_is_not_connected(dispatcher, registry):
    add_session(registry, connection=None)
    with pytest.raises(NotConnected):
        await dispatcher.send_message("s1", "391234567890", "hi")


@pytest.mark.asyncio
async def test_thirty_first_send_is_rate_limited(dispatcher, registry, limiter_clock, metrics):
    transport = add_session(registry)
    for i in range(30):
        await dispatcher.send_message("s1", "391234567890", f"m{i}")
        limiter_clock.advance(1)

    with pytest.raises(RateLimitExceeded) as excinfo:
        await dispatcher.send_message("s1", "391234567890", "m30")
    # The oldest request is 30s old: it leaves the window in 30s.
    assert excinfo.value.retry_after_seconds == 30
    assert len(transport.sent) == 30
    assert 'wab_rate_limited_total{limiter="messages"} 1.0' in metrics.generate_latest().decode()

    limiter_clock.advance(30)
    await dispatcher.send_message("s1", "391234567890", "later")
    assert len(transport.sent) == 31


@pytest.mark.asyncio
async def test_sessions_have_independent_budgets(dispatcher, registry):
    add_session(registry, "a")
    b = add_session(registry, "b")
    for _ in range(30):
        await dispatcher.send_message("a", "391234567890", "x")
    await dispatcher.send_message("b", "391234567890", "y")
    assert b.sent == [("391234567890@s.whatsapp.net", "y")]


@pytest.mark.asyncio
async def test_transport_error_becomes_transport_failure(dispatcher, registry, metrics):
    transport = add_session(registry)
    transport.send_error = RuntimeError("socket closed")
    with pytest.raises(TransportFailure, match="socket closed"):
        await dispatcher.send_message("s1", "391234567890", "hi")
    assert 'wab_message_errors_total{session_id="s1"} 1.0' in metrics.generate_latest().decode()
