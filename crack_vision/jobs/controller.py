"""Pipeline controller: scheduling, cancellation and the worker process lifecycle.

One controller runs at most one comparison at a time:
- run() while a comparison is in flight raises PipelineBusyError
- a background submission waits out a short debounce; a newer submission
  during that wait replaces it (the replaced subscription never completes)
- abort() kills the worker process and guarantees no completion handler fires

Loading and preprocessing run on the event loop; matching through
highlighting run in a separate process (see crack_vision.jobs.worker).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Generator
from multiprocessing.connection import Connection
from multiprocessing.process import BaseProcess
from typing import Any

from crack_vision.config import config
from crack_vision.jobs.types import (
    FALLBACK_STATUS_MESSAGE,
    PENDING_STATUS_MESSAGE,
    PipelineFailure,
    PipelinePriority,
    PipelineResult,
    PipelineState,
    PipelineStatus,
    PipelineSuccess,
)
from crack_vision.jobs.worker import (
    PipelineParams,
    WorkerProgress,
    WorkerRequest,
    WorkerResponse,
    WorkerRuntime,
    get_worker_runtime,
    worker_main,
)
from crack_vision.lib.image_io import ImageLoader
from crack_vision.lib.preprocess import bound_image
from crack_vision.utils.job_errors import LoadError, PipelineBusyError, PipelineError, WorkerError
from crack_vision.utils.log_utils import (
    log_phase,
    log_run_aborted,
    log_run_coalesced,
    log_run_completed,
    log_run_failed,
    log_run_fallback,
    log_run_rejected,
    log_run_started,
    log_status_updated,
    log_worker_spawned,
    log_worker_terminated,
)

logger = logging.getLogger(__name__)

CompletionHandler = Callable[[PipelineResult], Any]

# How long a terminated worker gets to exit before it is killed
PROCESS_EXIT_GRACE_SECONDS = 1.0


async def _receive(conn: Connection) -> Any:
    """Wait on the loop until `conn` is readable, then read one message.

    No thread sits blocked on the pipe while waiting, so cancellation and
    abort() never leave a reader behind.
    """
    loop = asyncio.get_running_loop()
    readable = loop.create_future()
    fd = conn.fileno()
    loop.add_reader(fd, lambda: readable.done() or readable.set_result(None))
    try:
        await readable
    finally:
        loop.remove_reader(fd)
    return await asyncio.to_thread(conn.recv)


class PipelineSubscription:
    """Handle to one submitted comparison.

    Completion handlers are called exactly once, on the event loop, with the
    PipelineResult. When the run is aborted or superseded none of them is
    called. The subscription can also be awaited; awaiting an aborted run
    raises asyncio.CancelledError.
    """

    def __init__(self, future: asyncio.Future, run_id: str) -> None:
        self.run_id = run_id
        self._future = future
        self._handlers: list[CompletionHandler] = []
        self._closed = False
        future.add_done_callback(self._dispatch)

    @property
    def done(self) -> bool:
        return self._future.done()

    @property
    def cancelled(self) -> bool:
        return self._closed or self._future.cancelled()

    def on_complete(self, handler: CompletionHandler) -> None:
        """Register a handler; called later on the loop even if the run already finished."""
        if self.cancelled:
            return
        if self._future.done():
            self._future.get_loop().call_soon(self._invoke, handler, self._future.result())
        else:
            self._handlers.append(handler)

    async def wait(self) -> PipelineResult:
        # Shielded so cancelling a waiter does not cancel the run
        return await asyncio.shield(self._future)

    def __await__(self) -> Generator[Any, None, PipelineResult]:
        return self.wait().__await__()

    def _resolve(self, result: PipelineResult) -> None:
        if not self._future.done():
            self._future.set_result(result)

    def _cancel(self) -> None:
        self._closed = True
        self._handlers.clear()
        self._future.cancel()

    def _dispatch(self, future: asyncio.Future) -> None:
        if future.cancelled():
            self._handlers.clear()
            return
        result = future.result()
        handlers, self._handlers = self._handlers, []
        for handler in handlers:
            self._invoke(handler, result)

    def _invoke(self, handler: CompletionHandler, result: PipelineResult) -> None:
        if self._closed:
            return
        try:
            handler(result)
        except Exception:
            logger.exception(f"[run.handler] completion handler raised (run-{self.run_id[:8]})")


class PipelineController:
    """Coordinates loading, the worker process and result delivery for one view."""

    def __init__(
        self,
        loader: ImageLoader | None = None,
        params: PipelineParams | None = None,
        *,
        max_dimension: int | None = None,
        debounce_seconds: float | None = None,
        worker_timeout_seconds: float | None = None,
        runtime: WorkerRuntime | None = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            loader: Image loader (defaults to HTTP/file loading with Pillow decoding)
            params: Worker parameters (defaults to values from config at run time)
            max_dimension: Longest image side before matching (defaults to config value)
            debounce_seconds: Background-priority delay (defaults to config value)
            worker_timeout_seconds: Upper bound on one worker run (defaults to config value)
            runtime: Worker runtime (defaults to the process-wide singleton)
        """
        self._loader = loader or ImageLoader()
        self._params = params
        self._max_dimension = (
            max_dimension if max_dimension is not None else config.max_dimension
        )
        self._debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else config.debounce_seconds
        )
        self._worker_timeout = (
            worker_timeout_seconds
            if worker_timeout_seconds is not None
            else config.worker_timeout_seconds
        )
        self._runtime = runtime

        self._state = PipelineState.IDLE
        self._message = ""
        self._priority = PipelinePriority.FOREGROUND

        self._task: asyncio.Task | None = None
        self._subscription: PipelineSubscription | None = None
        self._wake: asyncio.Event | None = None
        self._debouncing = False

        self._process: BaseProcess | None = None

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def priority(self) -> PipelinePriority:
        return self._priority

    @property
    def busy(self) -> bool:
        """True while a run is past its debounce and not yet finished."""
        return self._task is not None and not self._task.done() and not self._debouncing

    def status(self) -> PipelineStatus:
        return PipelineStatus(state=self._state, message=self._message)

    def run(
        self,
        baseline_ref: str | None,
        current_ref: str | None,
        priority: PipelinePriority | str = PipelinePriority.FOREGROUND,
    ) -> PipelineSubscription:
        """Submit a comparison of current against baseline.

        Must be called from a running event loop. Identical references and a
        missing reference resolve immediately without loading anything.

        Args:
            baseline_ref: Baseline image URL or path
            current_ref: Current image URL or path
            priority: background (debounced) or foreground (immediate)

        Returns:
            PipelineSubscription for the submitted run

        Raises:
            PipelineBusyError: If a run is already in flight
        """
        priority = PipelinePriority(priority)
        if self.busy:
            log_run_rejected(logger, f"run already in flight ({self._state.value})")
            raise PipelineBusyError(
                f"A comparison is already running ({self._state.value}); abort it first"
            )

        loop = asyncio.get_running_loop()
        self._supersede_pending()

        subscription = PipelineSubscription(loop.create_future(), uuid.uuid4().hex)

        shortcut = self._shortcut_result(baseline_ref, current_ref)
        if shortcut is not None:
            message = shortcut.reason if isinstance(shortcut, PipelineFailure) else ""
            self._set_state(PipelineState.DONE, message)
            subscription._resolve(shortcut)
            return subscription

        self._priority = priority
        self._subscription = subscription
        self._wake = asyncio.Event()
        self._debouncing = priority is PipelinePriority.BACKGROUND
        if self._debouncing:
            self._set_state(PipelineState.IDLE, PENDING_STATUS_MESSAGE)
        self._task = loop.create_task(
            self._execute(subscription, baseline_ref, current_ref),
            name=f"crack-vision-run-{subscription.run_id[:8]}",
        )
        return subscription

    def set_priority(self, priority: PipelinePriority | str) -> None:
        """Change priority; foreground starts a run still waiting out its debounce."""
        self._priority = PipelinePriority(priority)
        if self._priority is PipelinePriority.FOREGROUND and self._debouncing and self._wake:
            self._wake.set()

    def abort(self) -> None:
        """Cancel the pending or in-flight run and kill its worker.

        No completion handler of the aborted run fires. A no-op when nothing
        is running.
        """
        task, subscription = self._task, self._subscription
        if task is None or task.done():
            return

        self._task = None
        self._subscription = None
        self._debouncing = False

        task.cancel()
        if subscription is not None:
            subscription._cancel()
        process, self._process = self._process, None
        if process is not None and process.pid is not None and process.is_alive():
            # The run task joins it and closes the pipe once the cancellation lands
            process.terminate()

        self._set_state(PipelineState.ABORTED, "aborted")
        log_run_aborted(logger, subscription.run_id if subscription else None)

    def _supersede_pending(self) -> None:
        # Only reachable while the previous run is still debouncing
        if self._task is None or self._task.done():
            return
        if self._subscription is not None:
            log_run_coalesced(logger, self._subscription.run_id)
            self._subscription._cancel()
        self._task.cancel()
        self._task = None
        self._subscription = None
        self._debouncing = False

    @staticmethod
    def _shortcut_result(
        baseline_ref: str | None, current_ref: str | None
    ) -> PipelineResult | None:
        if not baseline_ref and not current_ref:
            return PipelineFailure("no image references supplied")
        if not baseline_ref or not current_ref:
            return PipelineSuccess.passthrough(baseline_ref or current_ref)
        if baseline_ref == current_ref:
            return PipelineSuccess.passthrough(current_ref)
        return None

    def _set_state(self, state: PipelineState, message: str = "") -> None:
        old_state = self._state
        self._state = state
        self._message = message
        log_status_updated(logger, old_state.value, state.value, message)

    async def _execute(
        self,
        subscription: PipelineSubscription,
        baseline_ref: str,
        current_ref: str,
    ) -> None:
        run_id = subscription.run_id
        if self._debouncing:
            await self._debounce()

        try:
            result = await self._run_pipeline(run_id, baseline_ref, current_ref)
        except Exception as e:
            # Unexpected errors still resolve the subscription exactly once
            log_run_failed(logger, e, run_id)
            result = PipelineFailure(f"Unexpected error ({type(e).__name__}: {e})")
            self._set_state(PipelineState.DONE, result.reason)

        if self._task is asyncio.current_task():
            self._task = None
            self._subscription = None
        subscription._resolve(result)

    async def _debounce(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self._debounce_seconds)
        except TimeoutError:
            pass
        self._debouncing = False

    async def _run_pipeline(
        self,
        run_id: str,
        baseline_ref: str,
        current_ref: str,
    ) -> PipelineResult:
        start_time = log_run_started(
            logger, self._priority.value, run_id, baseline_ref, current_ref
        )

        self._set_state(PipelineState.LOADING, "loading images")
        try:
            baseline, current = await self._loader.load_pair(baseline_ref, current_ref)
        except LoadError as e:
            return self._fail(e, run_id)

        with log_phase(logger, "Preprocessing", run_id=run_id):
            baseline = bound_image(baseline, self._max_dimension)
            current = bound_image(current, self._max_dimension)

        request = WorkerRequest(
            run_id=run_id,
            baseline=baseline,
            current=current,
            params=self._params or PipelineParams.from_config(),
            log_level=logging.getLevelName(logging.getLogger().getEffectiveLevel()),
            log_format=config.log_format,
        )
        # The request owns the pixels from here; it drops them once sent
        del baseline, current

        try:
            response = await self._run_worker(request)
        except WorkerError as e:
            return self._fail(e, run_id)

        if not response.success or response.image is None:
            return self._fail(WorkerError(response.error or "Worker returned no image"), run_id)

        stats = response.stats
        if response.used_fallback:
            reason = stats.fallback_reason if stats and stats.fallback_reason else "no homography"
            log_run_fallback(logger, reason, run_id)
            message = FALLBACK_STATUS_MESSAGE
        else:
            regions = stats.changed_regions if stats else 0
            message = f"{regions} changed region{'s' if regions != 1 else ''}"

        self._set_state(PipelineState.DONE, message)
        log_run_completed(
            logger,
            start_time,
            run_id,
            used_fallback=response.used_fallback,
            inlier_count=stats.inlier_count if stats else None,
            match_count=stats.match_count if stats else None,
            changed_regions=stats.changed_regions if stats else None,
            width=response.image.width,
            height=response.image.height,
        )
        return PipelineSuccess(
            image=response.image,
            used_fallback=response.used_fallback,
            source_ref=baseline_ref,
            stats=stats,
        )

    def _fail(self, error: PipelineError, run_id: str) -> PipelineFailure:
        log_run_failed(logger, error, run_id)
        self._set_state(PipelineState.DONE, str(error))
        return PipelineFailure(str(error))

    async def _run_worker(self, request: WorkerRequest) -> WorkerResponse:
        """Run one request in a fresh worker process.

        Raises:
            WorkerError: If the worker cannot start, crashes or times out
        """
        runtime = self._runtime or get_worker_runtime()
        context = await runtime.ensure_ready()

        parent_conn, child_conn = context.Pipe(duplex=True)
        process = context.Process(
            target=worker_main,
            args=(child_conn,),
            name=f"crack-vision-worker-{request.run_id[:8]}",
            daemon=True,
        )
        self._process = process
        reason = "completed"

        try:
            async with asyncio.timeout(self._worker_timeout):
                try:
                    await asyncio.to_thread(process.start)
                except OSError as e:
                    reason = "failed to start"
                    raise WorkerError(f"Worker failed to start ({e})") from e
                finally:
                    # The child holds its own end now; EOF on ours means it died
                    child_conn.close()
                log_worker_spawned(logger, process.pid, context.get_start_method())

                try:
                    await asyncio.to_thread(parent_conn.send, request)
                    request.release()

                    while True:
                        message = await _receive(parent_conn)
                        if isinstance(message, WorkerProgress):
                            self._set_state(message.state, message.message)
                            continue
                        # The worker exits on its own after answering
                        await asyncio.to_thread(process.join, PROCESS_EXIT_GRACE_SECONDS)
                        return message
                except (EOFError, OSError) as e:
                    reason = "crashed"
                    await asyncio.to_thread(process.join, PROCESS_EXIT_GRACE_SECONDS)
                    raise WorkerError(
                        f"Worker exited unexpectedly (exit code {process.exitcode})"
                    ) from e
        except TimeoutError as e:
            reason = "timeout"
            raise WorkerError(f"Worker timed out after {self._worker_timeout:g}s") from e
        except asyncio.CancelledError:
            reason = "aborted"
            raise
        finally:
            await self._reap_worker(process, parent_conn, reason)

    async def _reap_worker(
        self,
        process: BaseProcess,
        conn: Connection,
        reason: str,
    ) -> None:
        # abort() may already have signalled it; joins run off the event loop
        if self._process is process:
            self._process = None
        try:
            if process.pid is not None:
                if process.is_alive():
                    process.terminate()
                    await asyncio.to_thread(process.join, PROCESS_EXIT_GRACE_SECONDS)
                    if process.is_alive():
                        process.kill()
                        await asyncio.to_thread(process.join)
                else:
                    process.join()
                log_worker_terminated(logger, process.pid, process.exitcode, reason)
        finally:
            if not conn.closed:
                conn.close()
