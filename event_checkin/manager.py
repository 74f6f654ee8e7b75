"""
Data Source Manager

Owns the active data source adapter and the in-memory roster. Every
roster change, whatever its cause (initial load, poll, push delta,
optimistic edit, rollback), goes through this class and is published to
the update dispatcher.

All methods run on one asyncio event loop. Check-in updates hold a
per-attendee lock so they apply in call order. A generation counter, bumped on every initialize and source switch, lets
late results from a replaced adapter be recognized and discarded.
"""

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Dict, List, Mapping, Optional, Tuple, Union

from .config import DataSourceConfig
from .dispatcher import UpdateDispatcher
from .exceptions import (
    AttendeeNotFound,
    EventCheckinException,
    SourceMisconfigured,
    SourceParseError,
    SourceUnavailable,
    UpdateRejected,
)
from .models import AttendeeRecord, CheckInStatus, PushDelta, SourceKind, utc_now
from .normalizer import apply_row_changes
from .roster import RosterStats, compute_stats
from .sources import DataSource, DataSourceFactory
from .validation import EmailValidator

logger = logging.getLogger(__name__)


class ManagerState(Enum):
    """Lifecycle states of the source manager"""
    UNINITIALIZED = "uninitialized"
    LOADED = "loaded"
    SWITCHING = "switching"
    ERROR = "error"


class DataSourceManager:
    """
    Coordinates one active data source and the roster it feeds

    Callers use ``initialize`` once, then ``refresh``, ``update_check_in``
    and ``switch_source``; ``dispose`` releases the adapter, its polling
    timer and its push subscription.
    """

    def __init__(self, config: DataSourceConfig, source_factory=None,
                 dispatcher: Optional[UpdateDispatcher] = None, email_validator=None):
        """
        Initialize source manager

        Args:
            config: Data source configuration
            source_factory: Callable ``(config, kind) -> DataSource``
            dispatcher: Update dispatcher to publish roster changes on
            email_validator: Email validation capability for normalization
        """
        self.config = config
        self.email_validator = email_validator if email_validator is not None else EmailValidator()
        self.source_factory = source_factory or DataSourceFactory(self.email_validator)
        self.dispatcher = dispatcher or UpdateDispatcher()

        self.source: Optional[DataSource] = None
        self.state = ManagerState.UNINITIALIZED
        self.last_error: Optional[EventCheckinException] = None
        self.last_loaded_at = None

        self._roster: List[AttendeeRecord] = []
        self._generation = 0
        self._pending: Dict[str, AttendeeRecord] = {}
        self._update_locks: Dict[str, asyncio.Lock] = {}
        self._load_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._push_task: Optional[asyncio.Task] = None

    # -- queries ---------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener):
        """Register a roster listener; returns its unsubscribe function"""
        return self.dispatcher.subscribe(listener)

    def get_current_roster(self) -> Tuple[AttendeeRecord, ...]:
        return tuple(self._roster)

    def get_active_source_type(self) -> SourceKind:
        if self.source is not None:
            return self.source.kind
        return self.config.active_type

    def get_stats(self) -> RosterStats:
        return compute_stats(self._roster)

    def get_status(self) -> Dict:
        """Summary of the manager for status indicators"""
        return {
            "state": self.state.value,
            "sourceType": self.get_active_source_type().value,
            "error": str(self.last_error) if self.last_error else None,
            "errorCode": self.last_error.error_code if self.last_error else None,
            "lastLoadedAt": self.last_loaded_at.isoformat() if self.last_loaded_at else None,
            "polling": self._poll_task is not None and not self._poll_task.done(),
            "push": self._push_task is not None and not self._push_task.done(),
        }

    def _index_of(self, attendee_id) -> Optional[int]:
        key = str(attendee_id)
        for index, record in enumerate(self._roster):
            if record.id == key:
                return index
        return None

    def _publish(self) -> None:
        self.dispatcher.publish(self._roster)

    # -- lifecycle -------------------------------------------------------

    async def initialize(self, config: Optional[DataSourceConfig] = None) -> Tuple[AttendeeRecord, ...]:
        """
        Build the configured adapter and load the first snapshot

        Load failures are recorded in ``state`` and ``last_error``
        rather than raised.

        Args:
            config: Optional configuration replacing the constructor's

        Returns:
            The roster after the first load
        """
        if config is not None:
            self.config = config
        await self._teardown()
        self._generation += 1
        self._roster = []
        self._pending.clear()
        self._update_locks.clear()
        await self._activate(self.config.active_type)
        return self.get_current_roster()

    async def switch_source(self, new_type: Union[str, SourceKind],
                            new_settings: Optional[Mapping] = None,
                            confirmed: bool = False) -> bool:
        """
        Replace the active adapter, discarding the current roster

        No check-in state is carried between backends, so the caller
        must confirm the switch explicitly.

        Args:
            new_type: Source type to switch to
            new_settings: Optional camelCase settings for the new source
            confirmed: Whether the user accepted losing the roster

        Returns:
            True if the switch happened, False if it was not confirmed
        """
        if not confirmed:
            logger.info("Switch to %s not confirmed; keeping current source", new_type)
            return False

        kind = SourceKind.from_value(new_type)
        logger.info("Switching data source from %s to %s",
                    self.get_active_source_type().value, kind.value)
        self.state = ManagerState.SWITCHING
        await self._teardown()
        self._generation += 1
        self.config = self.config.with_source(kind, new_settings)
        self._roster = []
        self._pending.clear()
        self._update_locks.clear()
        self._publish()
        await self._activate(kind)
        return True

    async def dispose(self) -> None:
        """Stop polling, drop the push subscription and close the adapter"""
        await self._teardown()
        self._generation += 1
        self.state = ManagerState.UNINITIALIZED

    async def _activate(self, kind: SourceKind) -> None:
        self.source = self.source_factory(self.config, kind)
        generation = self._generation
        try:
            await self.source.open()
        except EventCheckinException as e:
            if generation == self._generation:
                self._handle_load_error(e)
            return
        if generation != self._generation:
            return

        self._start_push(generation)
        await asyncio.shield(self._start_load())
        if generation != self._generation:
            return
        if not isinstance(self.last_error, SourceMisconfigured):
            self._start_polling()

    async def _teardown(self) -> None:
        for task in (self._poll_task, self._push_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._poll_task = None
        self._push_task = None
        # An in-flight load is left to finish; the generation check discards it
        self._load_task = None

        source, self.source = self.source, None
        if source is not None:
            try:
                await source.close()
            except Exception:
                logger.exception("Error closing %s source", source.kind.value)

    # -- loading ---------------------------------------------------------

    def _start_load(self) -> asyncio.Task:
        if self._load_task is None or self._load_task.done():
            self._load_task = asyncio.get_running_loop().create_task(
                self._load(self.source, self._generation))
        return self._load_task

    @property
    def load_in_flight(self) -> bool:
        return self._load_task is not None and not self._load_task.done()

    async def refresh(self) -> Tuple[AttendeeRecord, ...]:
        """
        Reload the current adapter and replace the roster wholesale

        A refresh requested while a load is in flight waits for that
        load instead of starting another one.

        Returns:
            The roster after the load settles
        """
        if self.source is None:
            logger.warning("Refresh requested before initialization")
            return self.get_current_roster()
        await asyncio.shield(self._start_load())
        return self.get_current_roster()

    async def _load(self, source: DataSource, generation: int) -> None:
        try:
            records = await source.load_data()
        except EventCheckinException as e:
            if generation == self._generation:
                self._handle_load_error(e)
            else:
                logger.debug("Ignoring error from replaced source: %s", e)
            return
        except Exception as e:
            if generation == self._generation:
                logger.exception("Unexpected error loading %s source", source.kind.value)
                self._handle_load_error(SourceUnavailable(source.kind.value, str(e)))
            return

        if generation != self._generation:
            logger.info("Discarding stale %s snapshot from generation %d (current %d)",
                        source.kind.value, generation, self._generation)
            return

        self._roster = [self._pending.get(record.id, record) for record in records]
        self.state = ManagerState.LOADED
        self.last_error = None
        self.last_loaded_at = utc_now()
        logger.debug("Loaded %d attendees from %s", len(records), source.kind.value)
        self._publish()

    def _handle_load_error(self, error: EventCheckinException) -> None:
        self.state = ManagerState.ERROR
        self.last_error = error
        if isinstance(error, SourceParseError):
            logger.error("%s; treating snapshot as empty", error)
            self._roster = []
        elif self._roster:
            logger.warning("Load failed, keeping previous roster: %s", error)
        else:
            logger.error("Initial load failed: %s", error)
        self._publish()

    # -- polling and push ------------------------------------------------

    def _start_polling(self) -> None:
        source = self.source
        if source is None or not source.supports_polling() or source.poll_interval <= 0:
            return
        logger.info("Polling %s every %.1fs", source.kind.value, source.poll_interval)
        self._poll_task = asyncio.get_running_loop().create_task(
            self._poll(source.poll_interval))

    async def _poll(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.load_in_flight:
                logger.debug("Skipping poll tick; a load is already in flight")
                continue
            await asyncio.shield(self._start_load())

    def _start_push(self, generation: int) -> None:
        source = self.source
        if source is None or not source.supports_push():
            return
        channel = source.push_channel()
        if channel is None:
            return
        self._push_task = asyncio.get_running_loop().create_task(
            self._consume_push(channel, generation))

    async def _consume_push(self, channel, generation: int) -> None:
        async for delta in channel:
            if generation != self._generation:
                break
            try:
                self.apply_push_delta(delta)
            except Exception:
                logger.exception("Failed to apply push notification %r", delta)

    def apply_push_delta(self, delta: Union[PushDelta, Mapping]) -> bool:
        """
        Merge one push delta into the roster

        Only update events are applied; inserts and deletes need a full
        reload. Deltas for ids not in the roster are ignored.

        Args:
            delta: PushDelta or raw ``{eventType, new, old}`` payload

        Returns:
            True if a record changed
        """
        if not isinstance(delta, PushDelta):
            delta = PushDelta.from_payload(delta)
        if not delta.is_update:
            logger.debug("Ignoring %s push event; reload to pick it up", delta.event_type)
            return False

        attendee_id = delta.new.get("id") if isinstance(delta.new, Mapping) else None
        index = self._index_of(attendee_id) if attendee_id is not None else None
        if index is None:
            logger.debug("Ignoring push update for unknown attendee %s", attendee_id)
            return False

        current = self._roster[index]
        kind = self.source.kind if self.source is not None else SourceKind.DATABASE
        patched = apply_row_changes(current, delta.new, kind, self.email_validator)
        if patched == current:
            return False
        self._roster[index] = patched
        logger.debug("Updated attendee %s from push notification", current.id)
        self._publish()
        return True

    # -- check-ins -------------------------------------------------------

    async def update_check_in(self, attendee_id, status: Union[str, CheckInStatus]) -> AttendeeRecord:
        """
        Change an attendee's status optimistically

        The roster is updated and published before the adapter call. If
        the adapter rejects the change, the previous status is restored,
        published again and the error re-raised. Calls for the same
        attendee are applied one at a time in the order they were made.

        Args:
            attendee_id: ID of the attendee
            status: Target status

        Returns:
            The record as now held in the roster

        Raises:
            AttendeeNotFound: If the id is not in the roster
            UpdateRejected: If the backend did not persist the change
        """
        status = status if isinstance(status, CheckInStatus) else CheckInStatus(status)
        if self._index_of(attendee_id) is None or self.source is None:
            raise AttendeeNotFound(str(attendee_id))

        # Updates for one attendee run one after another, in call order
        lock = self._update_locks.setdefault(str(attendee_id), asyncio.Lock())
        async with lock:
            return await self._apply_check_in(str(attendee_id), status)

    async def _apply_check_in(self, attendee_id: str, status: CheckInStatus) -> AttendeeRecord:
        index = self._index_of(attendee_id)
        if index is None or self.source is None:
            raise AttendeeNotFound(attendee_id)

        previous = self._roster[index]
        if previous.status is status:
            return previous

        optimistic = previous.with_status(status)
        source, generation = self.source, self._generation
        self._roster[index] = optimistic
        self._pending[previous.id] = optimistic
        self._publish()

        error = None
        try:
            await source.update_attendee(previous.id, status, optimistic.checked_in_at)
        except UpdateRejected as e:
            error = e
        except Exception as e:
            logger.exception("Unexpected error updating attendee %s", previous.id)
            error = UpdateRejected(previous.id, str(e))
        finally:
            if self._pending.get(previous.id) is optimistic:
                del self._pending[previous.id]

        if error is None:
            return optimistic

        logger.warning("Rolling back check-in for %s: %s", previous.id, error)
        if generation == self._generation:
            current_index = self._index_of(previous.id)
            if current_index is not None:
                # Fields merged from push notifications meanwhile are kept
                current = self._roster[current_index]
                self._roster[current_index] = current.with_status(
                    previous.status, previous.checked_in_at)
                self._publish()
        raise error

    async def reset_check_ins(self) -> int:
        """
        Move every checked-in attendee back to pending, then reload

        Returns:
            Number of attendees reset

        Raises:
            UpdateRejected: If any attendee could not be reset
        """
        checked_in = [record.id for record in self._roster if record.is_checked_in]
        failed = []
        for attendee_id in checked_in:
            try:
                await self.update_check_in(attendee_id, CheckInStatus.PENDING)
            except (UpdateRejected, AttendeeNotFound) as e:
                logger.warning("Could not reset %s: %s", attendee_id, e)
                failed.append(attendee_id)
        await self.refresh()

        if failed:
            raise UpdateRejected(", ".join(failed), f"{len(failed)} of {len(checked_in)} resets failed")
        logger.info("Reset %d check-ins", len(checked_in))
        return len(checked_in)
