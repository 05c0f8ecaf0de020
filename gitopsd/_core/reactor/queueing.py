"""
The per-key serialization of the canonical events.

The normalizer puts the canonical events of all the resource kinds
onto the dispatcher's intake. The dispatcher multiplexes them to the per-key
backlogs, which are created on demand together with their workers.

Every resource key is handled sequentially: the events of one key are processed
strictly in the order of their arrival, one at a time, by one worker.
Other keys are handled in parallel in their own workers, up to a limit.

To prevent the memory leaks over the long run, the backlogs and the workers
of each key are destroyed if no new events arrive for some time.
The destruction delay (usually a few seconds) is needed to prevent the often
backlog/worker destruction and re-creation in bursts of events.

The processing of the events itself is done in :mod:`gitopsd._core.reactor.processing`.
"""
import asyncio
import collections
import contextlib
import dataclasses
import datetime
import enum
import logging
from typing import TYPE_CHECKING, Callable, Deque, Iterator, MutableMapping, NamedTuple, \
                   Optional, Set, Union

from typing_extensions import Protocol

from gitopsd._cogs.aiokits import aiotasks
from gitopsd._cogs.configs import configuration
from gitopsd._core.actions import execution
from gitopsd._core.intents import events

logger = logging.getLogger(__name__)


class Processor(Protocol):
    async def __call__(
            self,
            *,
            event: events.CanonicalEvent,
            pressure: asyncio.Event,
            submit: Callable[[events.CanonicalEvent], None],
    ) -> execution.Outcome:
        ...


# An end-of-stream marker sent from the multiplexer to the workers.
# See: https://www.python.org/dev/peps/pep-0484/#support-for-singleton-types-in-unions
class EOS(enum.Enum):
    token = enum.auto()


if TYPE_CHECKING:
    IntakeQueue = asyncio.Queue[Union[events.CanonicalEvent, EOS]]
else:
    IntakeQueue = asyncio.Queue


class Backlog:
    """
    An ordered queue of one key's events, with coalescing of the duplicates.

    Only the queued events are here. The event being processed is already
    taken from the backlog, so it is never coalesced.
    """

    def __init__(self) -> None:
        super().__init__()
        self._items: Deque[Union[events.CanonicalEvent, EOS]] = collections.deque()
        self._nonempty = asyncio.Event()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Union[events.CanonicalEvent, EOS]]:
        return iter(list(self._items))

    def empty(self) -> bool:
        return not self._items

    def put_nowait(self, item: Union[events.CanonicalEvent, EOS]) -> None:
        self._items.append(item)
        self._nonempty.set()

    async def get(self) -> Union[events.CanonicalEvent, EOS]:
        while not self._items:
            self._nonempty.clear()
            await self._nonempty.wait()
        item = self._items.popleft()
        if not self._items:
            self._nonempty.clear()
        return item

    def coalesce(self) -> Optional[events.CanonicalEvent]:
        """
        Drop the oldest ``Modified`` event immediately followed by another ``Modified``.

        Only the latest observed state of the object matters, so the newer one
        takes care of both. ``Created`` & ``Deleted`` events are never dropped.
        Returns the dropped event, if any.
        """
        items = list(self._items)
        for idx, (item, next_item) in enumerate(zip(items, items[1:])):
            if (isinstance(item, events.CanonicalEvent) and
                    isinstance(next_item, events.CanonicalEvent) and
                    item.change_kind == events.ChangeKind.MODIFIED and
                    next_item.change_kind == events.ChangeKind.MODIFIED):
                del self._items[idx]
                return item
        return None


class DispatcherClosedError(RuntimeError):
    """ Raised when the events are submitted to a closed or not yet started dispatcher. """


class Stream(NamedTuple):
    """ A single key's stream of events, with some extra helpers. """
    backlog: Backlog
    pressure: asyncio.Event  # means: "hurry up, there are new events queued again"


Streams = MutableMapping[events.ResourceKey, Stream]


@dataclasses.dataclass(frozen=True)
class DeadLetter:
    event: events.CanonicalEvent
    exception: Optional[BaseException]
    attempts: int
    buried_at: datetime.datetime = dataclasses.field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))


class Dispatcher:
    """
    The serializing dispatcher of the canonical events to the per-key workers.

    It is explicitly constructed, started, and closed by its owner::

        async with Dispatcher(settings=settings, processor=processor) as dispatcher:
            dispatcher.submit(event)

    Submitting never blocks and never fails because of the downstream processing.
    """

    def __init__(
            self,
            *,
            settings: configuration.OperatorSettings,
            processor: Processor,
    ) -> None:
        super().__init__()
        self.settings = settings
        self.processor = processor
        self.dead_letters: Deque[DeadLetter] = collections.deque(maxlen=settings.queueing.dead_letters_limit)
        self._closed = False
        self._intake: Optional[IntakeQueue] = None
        self._streams: Streams = {}
        self._signaller: Optional[asyncio.Condition] = None
        self._scheduler: Optional[aiotasks.Scheduler] = None
        self._multiplexer: Optional[aiotasks.Task] = None
        self._refreshes: Set[asyncio.TimerHandle] = set()
        self._unfinished = 0
        self._finished: Optional[asyncio.Event] = None

    async def __aenter__(self) -> "Dispatcher":
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def streams(self) -> Streams:
        return self._streams

    async def start(self) -> None:
        if self._multiplexer is not None:
            raise RuntimeError("The dispatcher is already started.")
        self._intake = asyncio.Queue()
        self._signaller = asyncio.Condition()
        self._finished = asyncio.Event()
        self._finished.set()
        self._scheduler = aiotasks.Scheduler(limit=self.settings.queueing.worker_limit)
        self._multiplexer = aiotasks.create_guarded_task(
            name="events multiplexer", coro=self._multiplex(), logger=logger,
            finishable=True, cancellable=True)

    def submit(self, event: events.CanonicalEvent) -> None:
        """
        Put the event onto the intake without waiting for anything.
        """
        if self._closed or self._intake is None or self._finished is None:
            raise DispatcherClosedError("Cannot submit new events to a closed or not started dispatcher.")
        self._unfinished += 1
        self._finished.clear()
        self._intake.put_nowait(event)

    def refresh_later(self, event: events.CanonicalEvent, delay: float) -> None:
        """
        Re-submit a ``Modified`` event for the same key after some time.
        """
        loop = asyncio.get_running_loop()
        refresh = dataclasses.replace(
            event,
            change_kind=events.ChangeKind.MODIFIED,
            received_at=datetime.datetime.now(datetime.timezone.utc))
        handle: asyncio.TimerHandle
        def fire() -> None:
            self._refreshes.discard(handle)
            if not self._closed:
                self.submit(refresh)
        handle = loop.call_later(delay, fire)
        self._refreshes.add(handle)

    async def join(self) -> None:
        """
        Wait until all the submitted events are processed (or dead-lettered).
        """
        if self._finished is not None:
            await self._finished.wait()

    async def close(self) -> None:
        """
        Stop accepting the events, finish the queued ones gracefully, then cancel the rest.
        """
        self._closed = True
        for handle in self._refreshes:
            handle.cancel()
        self._refreshes.clear()

        if self._intake is None or self._multiplexer is None:
            return

        # Let the multiplexer route all the events which are already submitted.
        self._intake.put_nowait(EOS.token)
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.shield(self._multiplexer)

        # Allow the existing workers to finish gracefully before killing them.
        # Ensure the depletion is done even if the closing is double-cancelled (e.g. in tests).
        depletion_task = asyncio.create_task(self._wait_for_depletion())
        while not depletion_task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(depletion_task)

        # Terminate all the fire-and-forget per-key jobs if they are still running.
        if self._scheduler is not None:
            closing_task = asyncio.create_task(self._scheduler.close())
            while not closing_task.done():
                with contextlib.suppress(asyncio.CancelledError):
                    await asyncio.shield(closing_task)

    async def _multiplex(self) -> None:
        assert self._intake is not None
        assert self._scheduler is not None
        while True:
            event = await self._intake.get()
            if isinstance(event, EOS):
                break

            # Either use the existing key's backlog, or create a new one together with its worker.
            # "Fire-and-forget": we do not wait for the result; the job destroys itself when done.
            key = event.key
            try:
                stream = self._streams[key]
            except KeyError:
                stream = self._streams[key] = Stream(backlog=Backlog(), pressure=asyncio.Event())
                stream.pressure.set()
                stream.backlog.put_nowait(event)
                await self._scheduler.spawn(name=f'worker for {key}', coro=self._worker(key=key))
            else:
                stream.pressure.set()  # interrupt current sleeps, if any.
                stream.backlog.put_nowait(event)
                self._coalesce(key=key, backlog=stream.backlog)

    def _coalesce(self, *, key: events.ResourceKey, backlog: Backlog) -> None:
        if not self.settings.queueing.coalescing:
            return
        while len(backlog) > self.settings.queueing.max_depth:
            dropped = backlog.coalesce()
            if dropped is None:
                break
            logger.debug(f"Coalesced a duplicate {dropped.change_kind} event for {key}.")
            self._finish()

    def _finish(self) -> None:
        assert self._finished is not None
        self._unfinished -= 1
        if self._unfinished <= 0:
            self._unfinished = 0
            self._finished.set()

    async def _worker(self, *, key: events.ResourceKey) -> None:
        """
        A single worker for a single resource key, running in its own task.

        The worker is time-limited: it exits as soon as all the key's events
        have been processed and there are no new events for some time of idling.
        The multiplexer will spawn a new worker when (and if) new events arrive.
        """
        assert self._signaller is not None
        backlog = self._streams[key].backlog
        pressure = self._streams[key].pressure
        try:
            while True:

                # Get an event ASAP (no delay) if possible. But expect the backlog can be empty.
                # Save memory by finishing the worker if the backlog is empty for some time.
                try:
                    event = await asyncio.wait_for(backlog.get(), timeout=self.settings.queueing.idle_timeout)
                except asyncio.TimeoutError:
                    # The timeout can happen while the backlog is filled: depending on the order
                    # in which the waiters are checked once control returns to asyncio.
                    # IMPORTANT: There MUST be NO async/await-code between "break" and "finally",
                    # so that the backlog is not populated again.
                    if backlog.empty():
                        break
                    else:
                        continue

                # Exit gracefully and immediately on the end-of-stream marker sent on closing.
                if isinstance(event, EOS):
                    break

                # Relieve the pressure only if this is the last event, thus letting the processor sleep.
                # If there are more events to process, fast-skip the sleep as if they have just arrived.
                if backlog.empty():
                    pressure.clear()

                try:
                    await self._process(event=event, pressure=pressure)
                finally:
                    self._finish()

        except Exception:
            # Log the error for every worker: there can be several of them failing at the same time.
            logger.exception(f"Event processing has failed with an unrecoverable error for {key}.")
            raise

        finally:
            # Whether an exception or a break or a success, garbage-collect our backlog.
            # The backlog must not be left in the streams without a worker handling it.
            try:
                del self._streams[key]
            except KeyError:
                pass  # already absent

            # Notify the depletion routine about the changes in the workers'/streams' overall state.
            async with self._signaller:
                self._signaller.notify_all()

    async def _process(self, *, event: events.CanonicalEvent, pressure: asyncio.Event) -> None:
        """
        Process one event until it is done: retry it in place while it fails transiently.

        No later event of the same key is taken until this one is done or dead-lettered.
        """
        backoffs = execution.iter_backoffs(self.settings.retrying.backoffs)
        max_attempts = self.settings.retrying.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                outcome = await self.processor(event=event, pressure=pressure, submit=self.submit)
            except Exception as e:
                logger.exception(f"Fatal failure for {event.key}; dead-lettering the event.")
                self.dead_letters.append(DeadLetter(event=event, exception=e, attempts=attempt))
                return

            if outcome.final:
                if outcome.refresh is not None and not self._closed:
                    self.refresh_later(event, outcome.refresh)
                return

            # Deletions are retried until done: no later event would redo the cleanup.
            exhaustible = event.change_kind != events.ChangeKind.DELETED
            if exhaustible and max_attempts is not None and attempt >= max_attempts:
                logger.error(f"Retries are exhausted for {event.key} after {attempt} attempts; "
                             f"dead-lettering the event: {outcome.exception!r}")
                self.dead_letters.append(DeadLetter(event=event, exception=outcome.exception,
                                                    attempts=attempt))
                return

            # Sleep through the backoff. New events for this key do not interrupt it: they must wait.
            delay = outcome.delay if outcome.delay is not None else next(backoffs)
            logger.debug(f"Retrying {event.key} in {delay}s (attempt #{attempt + 1}).")
            await asyncio.sleep(delay)

    async def _wait_for_depletion(self) -> None:
        assert self._signaller is not None
        assert self._scheduler is not None

        # Notify all the workers to finish now. Wake them up if they are waiting in the backlog.
        for stream in self._streams.values():
            stream.backlog.put_nowait(EOS.token)

        # Wait for the backlogs to be depleted, but only if there are some workers running.
        # Continue with the tasks termination if the timeout is reached, no matter the backlogs.
        async with self._signaller:
            try:
                await asyncio.wait_for(
                    self._signaller.wait_for(lambda: not self._streams or self._scheduler.empty()),
                    timeout=self.settings.queueing.exit_timeout)
            except asyncio.TimeoutError:
                pass  # if not depleted as configured, proceed with what's left and let it fail

        # The last check if the termination is going to be graceful or not.
        if self._streams:
            logger.warning(f"Unprocessed streams left for {[str(key) for key in self._streams]!r}.")
