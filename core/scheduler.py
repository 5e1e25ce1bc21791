import asyncio
import inspect
from typing import Awaitable, Callable, Dict, List, Optional, Union

from shared.logging.logger import get_logger

log = get_logger("core.scheduler")

JobFn = Callable[[], Union[None, Awaitable[None]]]


class Scheduler:
    """
    Periodic and delayed work on the running event loop.

    - every(): one asyncio task per named job, sleeping between runs
    - call_later(): one-shot callbacks via loop.call_later

    A failing run is logged and the job keeps its cadence. shutdown()
    cancels everything and waits for the tasks to unwind; pending one-shot
    callbacks are either run first (run_pending=True) or dropped with a
    log line.
    """

    def __init__(self):
        # job name -> asyncio.Task
        self._tasks: Dict[str, asyncio.Task] = {}

        # pending one-shot handle -> wrapped callback
        self._handles: Dict[asyncio.TimerHandle, Callable[[], None]] = {}

        self._closed = False

    # ------------------------------------------------------------

    @property
    def job_names(self) -> List[str]:
        return sorted(self._tasks)

    @property
    def pending_callbacks(self) -> int:
        return sum(1 for h in self._handles if not h.cancelled())

    # ------------------------------------------------------------

    def every(self, name: str, interval_seconds: float, fn: JobFn) -> Optional[asyncio.Task]:
        if self._closed:
            log.warning(f"Scheduler closed; job '{name}' not started")
            return None

        if name in self._tasks and not self._tasks[name].done():
            log.warning(f"Job '{name}' already scheduled; skipping")
            return self._tasks[name]

        log.debug(f"Scheduling job '{name}' every {interval_seconds}s")
        task = asyncio.create_task(self._loop(name, interval_seconds, fn))
        self._tasks[name] = task
        return task

    async def _loop(self, name: str, interval_seconds: float, fn: JobFn):
        try:
            while True:
                await asyncio.sleep(interval_seconds)
                await self._run_once(name, fn)
        except asyncio.CancelledError:
            log.debug(f"Job '{name}' cancelled")
            raise

    async def _run_once(self, name: str, fn: JobFn) -> None:
        try:
            result = fn()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"Job '{name}' failed: {e}")

    # ------------------------------------------------------------

    def call_later(self, delay_seconds: float, fn: Callable[[], None]) -> Optional[asyncio.TimerHandle]:
        if self._closed:
            log.debug("Scheduler closed; delayed callback dropped")
            return None

        handle: Optional[asyncio.TimerHandle] = None

        def _invoke():
            self._handles.pop(handle, None)
            try:
                fn()
            except Exception as e:
                log.warning(f"Delayed callback failed: {e}")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running loop; delayed callback runs immediately")
            _invoke()
            return None

        handle = loop.call_later(max(0.0, delay_seconds), _invoke)
        self._handles[handle] = _invoke
        return handle

    # ------------------------------------------------------------

    async def shutdown(self, run_pending: bool = False):
        log.info("Scheduler shutdown initiated")
        self._closed = True

        pending = [fn for handle, fn in self._handles.items() if not handle.cancelled()]
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()

        if pending and run_pending:
            log.info(f"Running {len(pending)} pending callback(s) before shutdown")
            for fn in pending:
                fn()
        elif pending:
            log.info(f"Dropped {len(pending)} pending callback(s) on shutdown")

        tasks = list(self._tasks.values())
        for task in tasks:
            if not task.done():
                task.cancel()

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        log.info("Scheduler shutdown complete")
