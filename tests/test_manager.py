import asyncio

import pytest

from conftest import FakeFactory, FakeSource
from event_checkin.exceptions import (
    AttendeeNotFound,
    SourceMisconfigured,
    SourceParseError,
    SourceUnavailable,
    UpdateRejected,
)
from event_checkin.manager import DataSourceManager, ManagerState
from event_checkin.models import CheckInStatus, PushDelta, SourceKind


async def settle(rounds=5):
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_manager(config, *sources):
    return DataSourceManager(config, source_factory=FakeFactory(*sources))


def ids(roster):
    return [record.id for record in roster]


def test_initialize_loads_roster(config, source, recorder):
    manager = make_manager(config, source)
    manager.subscribe(recorder)

    roster = asyncio.run(manager.initialize())

    assert ids(roster) == ["1", "2", "7"]
    assert manager.state is ManagerState.LOADED
    assert manager.get_active_source_type() is SourceKind.CSV
    assert source.opened
    assert recorder.snapshots[-1] == roster


def test_update_check_in_is_optimistic(config, source, recorder):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        manager.subscribe(recorder)
        source.update_gate = asyncio.Event()

        update = asyncio.create_task(manager.update_check_in("2", CheckInStatus.CHECKED_IN))
        await settle()
        during = manager.get_current_roster()
        source.update_gate.set()
        record = await update
        return during, record

    during, record = asyncio.run(scenario())

    assert during[1].status is CheckInStatus.CHECKED_IN
    assert record.status is CheckInStatus.CHECKED_IN
    assert record.checked_in_at is not None
    assert source.updates == [("2", CheckInStatus.CHECKED_IN, record.checked_in_at)]
    assert len(recorder.snapshots) == 1


def test_rejected_update_rolls_back(config, source, recorder):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        before = manager.get_current_roster()
        manager.subscribe(recorder)
        source.update_error = UpdateRejected("2", "server error 500")
        with pytest.raises(UpdateRejected):
            await manager.update_check_in("2", "checked-in")
        return before, manager.get_current_roster()

    before, after = asyncio.run(scenario())

    assert after == before
    assert [s[1].status for s in recorder.snapshots] == [
        CheckInStatus.CHECKED_IN, CheckInStatus.PENDING]


def test_overlapping_rejected_updates_apply_in_order(config, source):
    async def scenario():
        manager = make_manager(config, source)
        before = await manager.initialize()
        source.update_gate = asyncio.Event()
        source.update_error = UpdateRejected("2", "server error 500")

        check_in = asyncio.create_task(manager.update_check_in("2", CheckInStatus.CHECKED_IN))
        await settle()
        undo = asyncio.create_task(manager.update_check_in("2", CheckInStatus.PENDING))
        await settle()
        source.update_gate.set()
        results = await asyncio.gather(check_in, undo, return_exceptions=True)
        return before, manager.get_current_roster(), results

    before, after, results = asyncio.run(scenario())

    assert isinstance(results[0], UpdateRejected)
    assert results[1].status is CheckInStatus.PENDING
    assert after == before
    assert len(source.updates) == 1


def test_rollback_keeps_fields_pushed_during_update(config, source):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        source.update_gate = asyncio.Event()
        source.update_error = UpdateRejected("2", "server error 500")

        update = asyncio.create_task(manager.update_check_in("2", CheckInStatus.CHECKED_IN))
        await settle()
        manager.apply_push_delta(PushDelta("update", {"id": "2", "groupName": "Speakers"}))
        source.update_gate.set()
        with pytest.raises(UpdateRejected):
            await update
        return manager.get_current_roster()[1]

    record = asyncio.run(scenario())

    assert record.status is CheckInStatus.PENDING
    assert record.checked_in_at is None
    assert record.group_name == "Speakers"


def test_unexpected_update_error_is_rejected(config, source):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        source.update_error = RuntimeError("socket closed")
        with pytest.raises(UpdateRejected):
            await manager.update_check_in("1", CheckInStatus.CHECKED_IN)
        return manager.get_current_roster()

    roster = asyncio.run(scenario())
    assert roster[0].status is CheckInStatus.PENDING


def test_update_to_same_status_skips_backend(config, source, recorder):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        manager.subscribe(recorder)
        return await manager.update_check_in("7", CheckInStatus.CHECKED_IN)

    record = asyncio.run(scenario())

    assert record.id == "7"
    assert source.updates == []
    assert recorder.snapshots == []


def test_undo_clears_timestamp(config, source):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        return await manager.update_check_in("7", CheckInStatus.PENDING)

    record = asyncio.run(scenario())
    assert record.status is CheckInStatus.PENDING
    assert record.checked_in_at is None


def test_update_unknown_attendee(config, source):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        await manager.update_check_in("404", CheckInStatus.CHECKED_IN)

    with pytest.raises(AttendeeNotFound):
        asyncio.run(scenario())


def test_update_rejects_unknown_status(config, source):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        await manager.update_check_in("1", "arrived")

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_reload_keeps_in_flight_update(config, source):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        source.update_gate = asyncio.Event()
        update = asyncio.create_task(manager.update_check_in("1", CheckInStatus.CHECKED_IN))
        await settle()
        await manager.refresh()
        during = manager.get_current_roster()[0]
        source.update_gate.set()
        await update
        return during

    during = asyncio.run(scenario())
    assert during.status is CheckInStatus.CHECKED_IN


def test_switch_without_confirmation_is_noop(config, source, recorder):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        manager.subscribe(recorder)
        switched = await manager.switch_source("googlesheets")
        return manager, switched

    manager, switched = asyncio.run(scenario())

    assert switched is False
    assert manager.get_active_source_type() is SourceKind.CSV
    assert len(manager.get_current_roster()) == 3
    assert recorder.snapshots == []
    assert not source.closed


def test_confirmed_switch_empties_roster_first(config, source, recorder):
    sheet = FakeSource([{"id": "gsheet_1", "attendeeName": "Mary Jackson"}],
                       kind=SourceKind.SPREADSHEET)

    async def scenario():
        manager = make_manager(config, source, sheet)
        await manager.initialize()
        manager.subscribe(recorder)
        sheet.gate = asyncio.Event()
        switch = asyncio.create_task(manager.switch_source(
            "googlesheets", {"sheetUrl": "https://example.org/sheet.csv"}, confirmed=True))
        await settle()
        during = manager.get_current_roster()
        state = manager.state
        sheet.gate.set()
        assert await switch
        return manager, during, state

    manager, during, state = asyncio.run(scenario())

    assert during == ()
    assert state is ManagerState.SWITCHING
    assert recorder.snapshots[0] == ()
    assert source.closed
    assert ids(manager.get_current_roster()) == ["gsheet_1"]
    assert manager.get_active_source_type() is SourceKind.SPREADSHEET
    assert manager.config.spreadsheet.sheet_url == "https://example.org/sheet.csv"


def test_stale_load_after_switch_is_discarded(config, source, recorder):
    sheet = FakeSource([{"id": "gsheet_1", "attendeeName": "Mary Jackson"}],
                       kind=SourceKind.SPREADSHEET)

    async def scenario():
        manager = make_manager(config, source, sheet)
        await manager.initialize()
        source.gate = asyncio.Event()
        refresh = asyncio.create_task(manager.refresh())
        await settle()
        await manager.switch_source("googlesheets", confirmed=True)
        manager.subscribe(recorder)
        source.gate.set()
        await refresh
        return manager

    manager = asyncio.run(scenario())

    assert ids(manager.get_current_roster()) == ["gsheet_1"]
    assert recorder.snapshots == []
    assert manager.generation == 2


def test_push_delta_updates_one_record(config):
    delta = {"eventType": "update",
             "new": {"id": 7, "status": "checked-in", "checked_in_at": "2026-01-23T10:00:00Z"}}
    rows = [{"id": "7", "attendeeName": "Alan Turing", "tableNumber": "Table 10"},
            {"id": "8", "attendeeName": "Joan Clarke", "tableNumber": "Table 10"}]
    source = FakeSource(rows, kind=SourceKind.DATABASE)

    async def scenario():
        manager = make_manager(config, source)
        before = await manager.initialize()
        changed = manager.apply_push_delta(delta)
        return before, manager.get_current_roster(), changed

    before, after, changed = asyncio.run(scenario())

    assert changed
    assert after[0].status is CheckInStatus.CHECKED_IN
    assert after[0].checked_in_at.hour == 10
    assert after[0].attendee_name == "Alan Turing"
    assert after[1] == before[1]


def test_push_delta_for_unknown_id_is_ignored(config, source, recorder):
    async def scenario():
        manager = make_manager(config, source)
        before = await manager.initialize()
        manager.subscribe(recorder)
        changed = manager.apply_push_delta(PushDelta(
            "update", {"id": 99, "status": "checked-in",
                       "checked_in_at": "2026-01-23T10:00:00Z"}))
        return before, manager.get_current_roster(), changed

    before, after, changed = asyncio.run(scenario())
    assert not changed
    assert after == before
    assert recorder.snapshots == []


def test_push_insert_events_are_ignored(config, source):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        return manager.apply_push_delta({"eventType": "INSERT", "new": {"id": 1}})

    assert asyncio.run(scenario()) is False


def test_push_channel_feeds_roster(config, rows):
    source = FakeSource(rows, kind=SourceKind.DATABASE, push=True)

    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        assert manager.get_status()["push"]
        source.push_channel().publish(PushDelta(
            "update", {"id": 2, "status": "checked-in",
                       "checked_in_at": "2026-01-23T10:00:00Z"}))
        await settle()
        roster = manager.get_current_roster()
        await manager.dispose()
        return manager, roster

    manager, roster = asyncio.run(scenario())

    assert roster[1].status is CheckInStatus.CHECKED_IN
    assert source.closed
    assert manager.state is ManagerState.UNINITIALIZED


def test_push_listener_survives_malformed_deltas(config, rows, caplog):
    source = FakeSource(rows, kind=SourceKind.DATABASE, push=True)

    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        channel = source.push_channel()
        channel.publish({"eventType": "UPDATE", "new": ["junk"]})
        channel.publish("not a payload")
        channel.publish(PushDelta("update", ["junk"]))
        channel.publish(PushDelta("update", {"id": "2", "groupName": "Speakers"}))
        await settle(10)
        status = manager.get_status()
        roster = manager.get_current_roster()
        await manager.dispose()
        return status, roster

    status, roster = asyncio.run(scenario())

    assert status["push"]
    assert roster[1].group_name == "Speakers"
    assert "Failed to apply push notification" in caplog.text


def test_poll_skips_tick_while_load_in_flight(config, rows):
    source = FakeSource(rows, polling=True, interval=0.01)

    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        assert manager.get_status()["polling"]
        source.gate = asyncio.Event()
        await asyncio.sleep(0.08)
        loads = source.loads
        source.gate.set()
        await manager.dispose()
        return loads

    assert asyncio.run(scenario()) == 2


def test_parse_error_empties_roster(config, source):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        source.load_error = SourceParseError("csv", "expected a JSON array of rows")
        await manager.refresh()
        return manager

    manager = asyncio.run(scenario())

    assert manager.get_current_roster() == ()
    assert manager.state is ManagerState.ERROR
    assert manager.get_status()["errorCode"] == "SOURCE_PARSE_ERROR"


def test_unavailable_keeps_previous_roster(config, source):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        source.load_error = SourceUnavailable("csv", "HTTP 503")
        await manager.refresh()
        return manager

    manager = asyncio.run(scenario())

    assert len(manager.get_current_roster()) == 3
    assert manager.state is ManagerState.ERROR
    assert isinstance(manager.last_error, SourceUnavailable)


def test_misconfigured_source_does_not_poll(config, rows):
    source = FakeSource(rows, polling=True, interval=0.01)
    source.load_error = SourceMisconfigured("csv", "pollUrl")

    async def scenario():
        manager = make_manager(config, source)
        roster = await manager.initialize()
        status = manager.get_status()
        await manager.dispose()
        return roster, status

    roster, status = asyncio.run(scenario())

    assert roster == ()
    assert status["state"] == "error"
    assert status["errorCode"] == "SOURCE_MISCONFIGURED"
    assert status["polling"] is False


def test_refresh_joins_in_flight_load(config, source):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        source.gate = asyncio.Event()
        first = asyncio.create_task(manager.refresh())
        second = asyncio.create_task(manager.refresh())
        await settle()
        source.gate.set()
        await asyncio.gather(first, second)

    asyncio.run(scenario())
    assert source.loads == 2


def test_reset_check_ins(config, rows):
    rows[0].update(status="checked-in", checkedInAt="2026-01-23T09:00:00Z")
    source = FakeSource(rows)

    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        count = await manager.reset_check_ins()
        return manager, count

    manager, count = asyncio.run(scenario())

    assert count == 2
    assert manager.get_stats().checked_in == 0
    assert source.loads == 2


def test_reset_check_ins_reports_failures(config, source):
    async def scenario():
        manager = make_manager(config, source)
        await manager.initialize()
        source.update_error = UpdateRejected("7", "offline")
        await manager.reset_check_ins()

    with pytest.raises(UpdateRejected):
        asyncio.run(scenario())
