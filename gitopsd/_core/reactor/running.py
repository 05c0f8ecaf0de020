import asyncio
import functools
import logging
import signal
import threading
from typing import MutableSequence, Optional

from gitopsd._cogs.aiokits import aiotasks
from gitopsd._cogs.clients import auth
from gitopsd._cogs.configs import configuration
from gitopsd._cogs.storage import connections
from gitopsd._core.engines import notifiers
from gitopsd._core.reactor import processing, queueing, receiving

logger = logging.getLogger(__name__)


def run(
        *,
        settings: Optional[configuration.OperatorSettings] = None,
        namespace: Optional[str] = None,
        stop_flag: Optional[asyncio.Event] = None,
) -> None:
    """
    Run the whole control plane synchronously, until stopped or failed.
    """
    try:
        asyncio.run(operator(
            settings=settings,
            namespace=namespace,
            stop_flag=stop_flag,
        ))
    except asyncio.CancelledError:
        pass


async def operator(
        *,
        settings: Optional[configuration.OperatorSettings] = None,
        namespace: Optional[str] = None,
        stop_flag: Optional[asyncio.Event] = None,
        context: Optional[auth.APIContext] = None,
) -> None:
    """
    Run the whole control plane asynchronously.

    The API context is created from the detected credentials unless given.
    The database is opened for the whole run, and closed after the dispatcher,
    so that the in-flight transactions are finished before the exit.
    """
    settings = settings if settings is not None else configuration.OperatorSettings()
    owned_context = context is None
    if context is None:
        context = auth.APIContext(auth.login(logger=logger))
    auth.context_var.set(context)
    try:
        database = connections.Database(
            path=settings.database.path,
            pool_size=settings.database.pool_size,
            busy_timeout=settings.database.busy_timeout,
        )
        async with database:
            await serve(
                settings=settings,
                database=database,
                namespace=namespace,
                stop_flag=stop_flag,
                context=context,
            )
    finally:
        if owned_context:
            await context.close()


async def serve(
        *,
        settings: configuration.OperatorSettings,
        database: connections.Database,
        namespace: Optional[str] = None,
        stop_flag: Optional[asyncio.Event] = None,
        context: Optional[auth.APIContext] = None,
) -> None:
    """
    Serve the notifications until one of the root tasks exits, or until stopped.

    On exit, the notifiers are stopped first, so that no new events arrive;
    then the dispatcher finishes the already queued events (for a limited time).
    """
    namespaces = receiving.NamespaceIndex()
    processor = functools.partial(processing.process_event, settings=settings, database=database)
    signal_flag: aiotasks.Future = asyncio.get_running_loop().create_future()
    tasks: MutableSequence[aiotasks.Task] = []

    async with queueing.Dispatcher(settings=settings, processor=processor) as dispatcher:
        normalizer = receiving.Normalizer(dispatcher=dispatcher, namespaces=namespaces)

        tasks.append(aiotasks.create_guarded_task(
            name="stop-flag checker", finishable=True, cancellable=True, logger=logger,
            coro=_stop_flag_checker(signal_flag=signal_flag, stop_flag=stop_flag)))
        tasks.append(aiotasks.create_guarded_task(
            name="namespace notifier", logger=logger,
            coro=notifiers.namespace_notifier(
                settings=settings,
                namespaces=namespaces,
                context=context)))
        for resource_kind in notifiers.NOTIFIED_KINDS:
            tasks.append(aiotasks.create_guarded_task(
                name=f"notifier of {resource_kind}", logger=logger,
                coro=notifiers.resource_notifier(
                    settings=settings,
                    normalizer=normalizer,
                    resource_kind=resource_kind,
                    namespace=namespace,
                    context=context)))

        # Ensure that all guarded tasks got control for a moment to enter the guard.
        await asyncio.sleep(0)
        _install_signal_handlers(signal_flag)

        try:
            root_done, root_pending = await aiotasks.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await aiotasks.stop(tasks, title="root", logger=logger)
            raise
        root_cancelled, _ = await aiotasks.stop(root_pending, title="root", logger=logger)

    if dispatcher.dead_letters:
        logger.warning(f"{len(dispatcher.dead_letters)} events were dead-lettered during the run.")

    # If succeeded or if cancellation is silenced, re-raise from failed tasks (if any).
    await aiotasks.reraise(root_done | root_cancelled)


def _install_signal_handlers(signal_flag: aiotasks.Future) -> None:
    # On Ctrl+C or pod termination, stop all tasks gracefully.
    if threading.current_thread() is threading.main_thread():
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, _set_once, signal_flag, signal.SIGINT)
            loop.add_signal_handler(signal.SIGTERM, _set_once, signal_flag, signal.SIGTERM)
        except NotImplementedError:
            logger.warning("OS signals are ignored: can't add signal handler in Windows.")
    else:
        logger.warning("OS signals are ignored: running not in the main thread.")


def _set_once(future: aiotasks.Future, result: signal.Signals) -> None:
    if not future.done():
        future.set_result(result)


async def _stop_flag_checker(
        signal_flag: aiotasks.Future,
        stop_flag: Optional[asyncio.Event],
) -> None:
    """
    A top-level task for external stopping by setting a stop-flag. Once set,
    this task will exit, and thus all other top-level tasks will be cancelled.
    """
    flags: MutableSequence[aiotasks.Future] = [signal_flag]
    if stop_flag is not None:
        flags.append(asyncio.create_task(stop_flag.wait(), name="stop-flag waiter"))

    try:
        done, pending = await asyncio.wait(flags, return_when=asyncio.FIRST_COMPLETED)
        result = done.pop().result()
    except asyncio.CancelledError:
        pass  # the control plane is stopping for any other reason
    else:
        if isinstance(result, signal.Signals):
            logger.info("Signal %s is received. The control plane is stopping.", result.name)
        else:
            logger.info("Stop-flag is raised. The control plane is stopping.")
    finally:
        for flag in flags[1:]:
            flag.cancel()
