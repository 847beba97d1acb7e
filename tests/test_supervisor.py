import logging

import pytest
import pytest_asyncio

from async_wa_bridge.errors import TransportFailure
from async_wa_bridge.policy import RecoveryPolicy
from async_wa_bridge.session import SessionStatus
from async_wa_bridge.supervisor import ConnectionSupervisor

from conftest import T0


@pytest_asyncio.fixture
async def sup(supervisor):
    yield supervisor
    await supervisor.close_all()


async def connected_session(sup, factory, session_id="s1", account="391234567890"):
    await sup.connect(session_id)
    factory.last.opened(account)
    await sup.wait_idle(session_id)
    return factory.last


# --------------------------------------------------------------- scenarios
@pytest.mark.asyncio
async def test_pairing_flow_reaches_connected(sup, factory, scheduler, clock, store):
    view = await sup.connect("s1")
    assert view.status is SessionStatus.CONNECTING
    first = factory.last
    assert first.credentials is None

    first.qr("TOKEN-1")
    await sup.wait_idle("s1")
    clock.advance(10)
    view = sup.get("s1")
    assert view.status is SessionStatus.QR_PENDING
    assert view.qr_code == "TOKEN-1"
    assert view.qr_generated_at == T0
    assert not view.qr_expired(clock())

    first.creds({"me": {"id": "391234567890:7@s.whatsapp.net"}})
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.status is SessionStatus.AUTHENTICATING
    assert view.qr_code is None
    assert view.qr_consumed is True
    assert await store.load("s1") == {"me": {"id": "391234567890:7@s.whatsapp.net"}}

    # The network restarts the stream once pairing completes.
    first.closed(515)
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.status is SessionStatus.RECONNECTING
    assert view.recovery_pending is True
    assert [h.delay for h in scheduler.pending] == [2.0]

    await scheduler.advance(2.0)
    assert len(factory.created) == 2
    assert first.ended is True
    second = factory.last
    assert second.credentials == {"me": {"id": "391234567890:7@s.whatsapp.net"}}

    second.opened("391234567890")
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.status is SessionStatus.CONNECTED
    assert view.is_connected is True
    assert view.account_id == "391234567890"
    assert view.recovery_pending is False
    assert view.qr_code is None


@pytest.mark.asyncio
async def test_stream_error_without_artifact_recovers(sup, factory, scheduler):
    first = await connected_session(sup, factory)

    first.closed(515)
    await sup.wait_idle("s1")
    assert sup.get("s1").status is SessionStatus.RECONNECTING

    await scheduler.advance(2)
    assert len(factory.created) == 1
    await scheduler.advance(1)
    assert len(factory.created) == 2

    factory.last.opened("391234567890")
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.status is SessionStatus.CONNECTED
    assert view.recovery_pending is False
    assert view.recovery_attempts == 0
    assert scheduler.pending == []


# ---------------------------------------------------------------- pairing
@pytest.mark.asyncio
async def test_recoverable_close_keeps_valid_artifact(sup, factory, scheduler, clock):
    await sup.connect("s1")
    factory.last.qr("TOKEN-1")
    await sup.wait_idle("s1")

    clock.advance(60)
    factory.last.closed(428)
    await sup.wait_idle("s1")

    view = sup.get("s1")
    assert view.status is SessionStatus.QR_PENDING
    assert view.qr_code == "TOKEN-1"
    assert scheduler.pending == []
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_recoverable_close_replaces_expired_artifact(sup, factory, scheduler, clock):
    await sup.connect("s1")
    factory.last.qr("TOKEN-1")
    await sup.wait_idle("s1")

    clock.advance(180)
    factory.last.closed(515)
    await sup.wait_idle("s1")
    assert sup.get("s1").status is SessionStatus.RECONNECTING
    assert [h.delay for h in scheduler.pending] == [2.0]

    await scheduler.advance(2.0)
    factory.last.qr("TOKEN-2")
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.qr_code == "TOKEN-2"
    assert view.status is SessionStatus.QR_PENDING


@pytest.mark.asyncio
async def test_scan_after_refreshed_codes_uses_fixed_delay(sup, factory, scheduler, clock):
    await sup.connect("s1")
    for n in range(6):
        factory.last.qr(f"TOKEN-{n}")
        await sup.wait_idle("s1")
        clock.advance(180)
        factory.last.closed(515)
        await sup.wait_idle("s1")
        assert [h.delay for h in scheduler.pending] == [2.0]
        await scheduler.advance(2.0)

    factory.last.qr("TOKEN-LAST")
    factory.last.creds()
    factory.last.closed(515)
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.status is SessionStatus.RECONNECTING
    assert [h.delay for h in scheduler.pending] == [2.0]

    await scheduler.advance(2.0)
    factory.last.opened("391234567890")
    await sup.wait_idle("s1")
    assert sup.get("s1").status is SessionStatus.CONNECTED


@pytest.mark.asyncio
async def test_refreshed_token_only_replaces_expired_artifact(sup, factory, clock):
    await sup.connect("s1")
    factory.last.qr("TOKEN-1")
    factory.last.qr("TOKEN-2")
    await sup.wait_idle("s1")
    assert sup.get("s1").qr_code == "TOKEN-1"

    clock.advance(180)
    factory.last.qr("TOKEN-3")
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.qr_code == "TOKEN-3"
    assert view.qr_generated_at == T0 + 180


@pytest.mark.asyncio
async def test_consumed_artifact_yields_to_next_token(sup, factory):
    await sup.connect("s1")
    factory.last.qr("TOKEN-1")
    factory.last.creds()
    factory.last.creds()
    factory.last.qr("TOKEN-2")
    await sup.wait_idle("s1")

    view = sup.get("s1")
    assert view.qr_consumed is False
    assert view.qr_code == "TOKEN-2"
    assert view.status is SessionStatus.QR_PENDING

    factory.last.creds()
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.qr_consumed is True
    assert view.qr_code is None


@pytest.mark.asyncio
async def test_credentials_without_artifact_only_persist(sup, factory, store):
    transport = await connected_session(sup, factory)
    transport.creds({"rotated": True})
    await sup.wait_idle("s1")
    assert sup.get("s1").status is SessionStatus.CONNECTED
    assert await store.load("s1") == {"rotated": True}


@pytest.mark.asyncio
async def test_print_qr_logs_terminal_code(registry, store, factory, scheduler, clock, caplog):
    sup = ConnectionSupervisor(registry, store, factory, scheduler=scheduler, clock=clock, print_qr=True)
    caplog.set_level(logging.INFO, logger="ConnectionSupervisor")
    await sup.connect("s1")
    factory.last.qr("TOKEN-1")
    await sup.wait_idle("s1")
    assert "scan this QR code" in caplog.text
    await sup.close_all()


# ----------------------------------------------------- disconnect classes
@pytest.mark.asyncio
async def test_logout_removes_record_and_credentials(sup, factory, store, scheduler):
    transport = await connected_session(sup, factory)
    transport.creds({"k": "v"})
    await sup.wait_idle("s1")
    assert await store.load("s1") is not None

    transport.closed(401)
    await sup.wait_idle("s1")
    assert sup.get("s1") is None
    assert await store.load("s1") is None
    assert scheduler.pending == []

    # Late events from the logged-out handle are ignored.
    transport.opened("391234567890")
    await sup.wait_idle("s1")
    assert sup.get("s1") is None


@pytest.mark.parametrize("code", [403, 404, 500])
@pytest.mark.asyncio
async def test_restricted_codes_fail_without_retry(sup, factory, scheduler, code):
    transport = await connected_session(sup, factory)
    transport.closed(code)
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.status is SessionStatus.FAILED
    assert view.last_disconnect_code == code
    assert str(code) in view.last_error
    assert scheduler.pending == []


@pytest.mark.asyncio
async def test_unknown_close_fails_and_keeps_artifact(sup, factory, scheduler):
    await sup.connect("s1")
    factory.last.qr("TOKEN-1")
    factory.last.closed(None)
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.status is SessionStatus.FAILED
    assert view.qr_code == "TOKEN-1"
    assert scheduler.pending == []


@pytest.mark.parametrize("code", [403, None])
@pytest.mark.asyncio
async def test_terminal_close_cancels_pending_recovery(sup, factory, scheduler, code):
    transport = await connected_session(sup, factory)
    transport.closed(515)
    await sup.wait_idle("s1")
    handle = scheduler.pending[0]

    transport.closed(code)
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.status is SessionStatus.FAILED
    assert view.recovery_pending is False
    assert handle.cancelled is True
    await scheduler.advance(10)
    assert len(factory.created) == 1
    assert sup.get("s1").status is SessionStatus.FAILED


# --------------------------------------------------------------- recovery
@pytest.mark.asyncio
async def test_recovery_schedule_is_idempotent(sup, factory, scheduler):
    transport = await connected_session(sup, factory)
    transport.closed(515)
    transport.closed(503)
    transport.closed(428)
    await sup.wait_idle("s1")
    assert len(scheduler.pending) == 1

    await scheduler.advance(60)
    assert len(factory.created) == 2


@pytest.mark.asyncio
async def test_open_event_cancels_pending_recovery(sup, factory, scheduler):
    transport = await connected_session(sup, factory)
    transport.closed(515)
    await sup.wait_idle("s1")
    handle = scheduler.pending[0]

    transport.opened("391234567890")
    await sup.wait_idle("s1")
    assert handle.cancelled is True
    assert sup.get("s1").status is SessionStatus.CONNECTED
    await scheduler.advance(10)
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_stale_generation_events_are_dropped(sup, factory, scheduler):
    first = await connected_session(sup, factory)
    first.closed(515)
    await sup.wait_idle("s1")
    await scheduler.advance(3)
    second = factory.last
    assert second is not first

    first.closed(401)
    first.qr("OLD-TOKEN")
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view is not None
    assert view.status is SessionStatus.CONNECTING
    assert view.qr_code is None


@pytest.mark.asyncio
async def test_recovery_backs_off_and_gives_up(registry, store, factory, scheduler, clock):
    policy = RecoveryPolicy(max_attempts=2, network_delay=3.0, max_delay=60.0)
    sup = ConnectionSupervisor(registry, store, factory, scheduler=scheduler, policy=policy, clock=clock)
    await connected_session(sup, factory)

    factory.last.closed(515)
    await sup.wait_idle("s1")
    assert [h.delay for h in scheduler.pending] == [3.0]
    await scheduler.advance(3)

    factory.last.closed(515)
    await sup.wait_idle("s1")
    assert [h.delay for h in scheduler.pending] == [6.0]
    await scheduler.advance(6)
    assert sup.get("s1").recovery_attempts == 2

    factory.last.closed(515)
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.status is SessionStatus.FAILED
    assert "2 attempts" in view.last_error
    assert scheduler.pending == []
    await sup.close_all()


@pytest.mark.asyncio
async def test_failed_recovery_open_is_retried(sup, factory, scheduler):
    transport = await connected_session(sup, factory)
    transport.closed(515)
    await sup.wait_idle("s1")

    factory.error = ConnectionError("socket refused")
    await scheduler.advance(3)
    view = sup.get("s1")
    assert view.status is SessionStatus.RECONNECTING
    assert "socket refused" in view.last_error
    assert view.recovery_pending is True
    assert [h.delay for h in scheduler.pending] == [6.0]

    factory.error = None
    await scheduler.advance(6)
    assert len(factory.created) == 2
    assert sup.get("s1").status is SessionStatus.CONNECTING

    factory.last.opened("391234567890")
    await sup.wait_idle("s1")
    view = sup.get("s1")
    assert view.status is SessionStatus.CONNECTED
    assert view.recovery_attempts == 0


@pytest.mark.asyncio
async def test_failed_recovery_opens_give_up_after_max_attempts(registry, store, factory, scheduler, clock):
    policy = RecoveryPolicy(max_attempts=2, network_delay=3.0)
    sup = ConnectionSupervisor(registry, store, factory, scheduler=scheduler, policy=policy, clock=clock)
    await connected_session(sup, factory)
    factory.last.closed(515)
    await sup.wait_idle("s1")

    factory.error = ConnectionError("socket refused")
    await scheduler.advance(3)
    assert sup.get("s1").status is SessionStatus.RECONNECTING
    await scheduler.advance(6)

    view = sup.get("s1")
    assert view.status is SessionStatus.FAILED
    assert view.recovery_pending is False
    assert "Recovery abandoned after 2 attempts" in view.last_error
    assert "socket refused" in view.last_error
    assert scheduler.pending == []
    await sup.close_all()


# ---------------------------------------------------------------- connect
@pytest.mark.asyncio
async def test_connect_reuses_connected_session(sup, factory):
    await connected_session(sup, factory)
    view = await sup.connect("s1")
    assert view.status is SessionStatus.CONNECTED
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_connect_reuses_session_with_scannable_artifact(sup, factory, clock):
    await sup.connect("s1")
    factory.last.qr("TOKEN-1")
    await sup.wait_idle("s1")
    clock.advance(100)
    view = await sup.connect("s1")
    assert view.qr_code == "TOKEN-1"
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_connect_replaces_expired_or_failed_session(sup, factory, clock):
    await sup.connect("s1")
    first = factory.last
    first.qr("TOKEN-1")
    await sup.wait_idle("s1")
    clock.advance(200)

    view = await sup.connect("s1")
    assert len(factory.created) == 2
    assert first.ended is True
    assert view.status is SessionStatus.CONNECTING
    assert view.qr_code is None


@pytest.mark.asyncio
async def test_connect_cancels_pending_recovery(sup, factory, scheduler):
    transport = await connected_session(sup, factory)
    transport.closed(515)
    await sup.wait_idle("s1")
    handle = scheduler.pending[0]

    await sup.connect("s1")
    assert handle.cancelled is True
    assert len(factory.created) == 2
    await scheduler.advance(10)
    assert len(factory.created) == 2


@pytest.mark.asyncio
async def test_connect_failure_records_failed_session(sup, factory):
    factory.error = RuntimeError("boom")
    with pytest.raises(TransportFailure) as excinfo:
        await sup.connect("s1")
    assert "boom" in excinfo.value.message
    view = sup.get("s1")
    assert view.status is SessionStatus.FAILED
    assert "boom" in view.last_error

    factory.error = None
    view = await sup.connect("s1")
    assert view.status is SessionStatus.CONNECTING
    assert view.last_error is None


@pytest.mark.asyncio
async def test_probe_failure_aborts_connect(registry, store, factory, scheduler, clock):
    async def probe():
        raise TransportFailure("Cannot reach messaging servers at https://web.example.test.")

    sup = ConnectionSupervisor(registry, store, factory, scheduler=scheduler, clock=clock, probe=probe)
    with pytest.raises(TransportFailure, match="Cannot reach"):
        await sup.connect("s1")
    assert factory.created == []
    assert sup.get("s1").status is SessionStatus.FAILED


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_event_processing(sup, factory, monkeypatch):
    await sup.connect("s1")

    def broken(record, event):
        raise RuntimeError("handler failure")

    monkeypatch.setattr(sup, "_on_pairing_code", broken)
    factory.last.qr("TOKEN-1")
    factory.last.opened("391234567890")
    await sup.wait_idle("s1")
    assert sup.get("s1").status is SessionStatus.CONNECTED


# ------------------------------------------------------------- disconnect
@pytest.mark.asyncio
async def test_disconnect_logs_out_connected_session(sup, factory, store):
    transport = await connected_session(sup, factory)
    transport.creds({"k": "v"})
    await sup.wait_idle("s1")

    assert await sup.disconnect("s1") is True
    assert transport.logged_out is True
    assert sup.get("s1") is None
    assert await store.load("s1") == {"k": "v"}
    assert await sup.disconnect("s1") is False


@pytest.mark.asyncio
async def test_disconnect_ends_pending_session_and_cancels_recovery(sup, factory, scheduler):
    transport = await connected_session(sup, factory)
    transport.closed(515)
    await sup.wait_idle("s1")
    handle = scheduler.pending[0]

    assert await sup.disconnect("s1") is True
    assert transport.ended is True
    assert transport.logged_out is False
    assert handle.cancelled is True
    await scheduler.advance(10)
    assert len(factory.created) == 1


@pytest.mark.asyncio
async def test_disconnect_swallows_logout_errors(sup, factory):
    transport = await connected_session(sup, factory)
    transport.logout_error = RuntimeError("already gone")
    assert await sup.disconnect("s1") is True
    assert sup.get("s1") is None


@pytest.mark.asyncio
async def test_restore_and_close_all(sup, factory, store):
    await store.save("a", {"me": "a"})
    await store.save("b", {"me": "b"})
    opened = await sup.restore(await store.list_sessions())
    assert opened == 2
    assert sorted(t.credentials["me"] for t in factory.created) == ["a", "b"]

    await sup.close_all()
    assert sup.views() == []
    assert all(t.ended for t in factory.created)


@pytest.mark.asyncio
async def test_session_gauge_tracks_statuses(sup, factory, metrics):
    await connected_session(sup, factory, "s1")
    await sup.connect("s2")
    output = metrics.generate_latest().decode()
    assert 'wab_sessions{status="connected"} 1.0' in output
    assert 'wab_sessions{status="connecting"} 1.0' in output
