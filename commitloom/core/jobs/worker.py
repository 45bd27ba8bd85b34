"""Background worker for analysis runs.

- Daemon thread with its own asyncio event loop
- Queue-based job processing with Semaphore concurrency control
- Jobs are pushed by the engine (``submit``); a run is queued or
  executing at most once at a time
"""

import asyncio
import logging
import threading
from typing import Optional, Set

from .models import AnalysisJob
from .runner import AnalysisRunner

logger = logging.getLogger(__name__)


class AnalysisWorker:
    """Execute AnalysisJobs in the background.

    Lifecycle:
    1. start() spawns the daemon thread with an asyncio loop
    2. submit() hands a job to the loop thread-safely
    3. each job runs under the Semaphore via AnalysisRunner.run()
    4. stop() signals shutdown
    """

    def __init__(
        self,
        runner: AnalysisRunner,
        max_concurrent: int = 2,
        poll_interval: float = 1.0,
    ):
        self._runner = runner
        self.max_concurrent = max_concurrent
        self.poll_interval = poll_interval

        self._queue: Optional[asyncio.Queue] = None
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._ready = threading.Event()

        self._active: Set[str] = set()
        self._active_lock = threading.Lock()
        self.errors = []

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start the background worker thread."""
        if self._running:
            logger.warning("Analysis worker already running")
            return
        self._running = True
        self._ready.clear()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name="analysis-worker"
        )
        self._thread.start()
        self._ready.wait(timeout=5.0)
        logger.info("Analysis worker started")

    def stop(self):
        """Stop the background worker."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5.0)
        logger.info("Analysis worker stopped")

    def submit(self, job: AnalysisJob) -> bool:
        """Queue a job. False when the run is already queued or executing."""
        run_id = str(job.run_id)
        with self._active_lock:
            if run_id in self._active:
                logger.info(f"Run {run_id} already queued or running, not resubmitted")
                return False
            self._active.add(run_id)

        if not self._running:
            self.start()
        self._loop.call_soon_threadsafe(self._queue.put_nowait, job)
        logger.info(f"Run {run_id} submitted ({job.mode.value})")
        return True

    def is_active(self, run_id) -> bool:
        with self._active_lock:
            return str(run_id) in self._active

    # ── Loop ──────────────────────────────────────────────────────────

    def _run_loop(self):
        """Run the async event loop in the background thread."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._queue = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._ready.set()

        try:
            self._loop.run_until_complete(self._main_loop())
        except Exception as e:
            logger.error(f"Analysis worker loop error: {e}", exc_info=True)
        finally:
            self._loop.close()

    async def _main_loop(self):
        tasks: Set[asyncio.Task] = set()
        while self._running:
            try:
                job = await asyncio.wait_for(self._queue.get(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue
            task = asyncio.create_task(self._process_with_semaphore(job))
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _process_with_semaphore(self, job: AnalysisJob):
        """Process job with semaphore for concurrency control."""
        run_id = str(job.run_id)
        try:
            async with self._semaphore:
                status = await self._runner.run(job)
                logger.info(f"Run {run_id} worker pass ended in {status}")
        except Exception as e:
            logger.error(f"Run {run_id} crashed in worker: {e}", exc_info=True)
            self.errors.append({"run_id": run_id, "error": str(e)})
        finally:
            with self._active_lock:
                self._active.discard(run_id)
