"""
Application root.

Builds the store, cache, recorder and board view model once, and runs them
on a single asyncio event loop in a dedicated thread. Every cache mutation
happens on that thread; request threads reach the core only through
call() / run() / submit().
"""
import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, List, Optional

from .activity import ActivityRecorder
from .alerts import build_alerter
from .board import BoardViewModel
from .cache import SyncCache
from .config import Config
from .local_store import LocalFileStore
from .retry import RetryPolicy
from .schema import Task, TaskPriority, TaskStatus
from .store import DocumentStore, SQLiteDocumentStore

logger = logging.getLogger(__name__)


def build_store(config: Config) -> DocumentStore:
    if config.backend == "local":
        logger.warning(f"Using local fallback store at {config.local_store_dir}")
        return LocalFileStore(config.local_store_dir, limit=config.activity_limit)
    return SQLiteDocumentStore(config.db_path, poll_interval=config.poll_interval)


def default_seed_tasks() -> List[Task]:
    """Starter cards written once, when a brand-new board is first opened."""
    return [
        Task.create(
            "Set up the task board",
            status=TaskStatus.DONE,
            description="Deploy the board and point the webhooks at it",
            priority=TaskPriority.HIGH,
            tags=["tooling"],
        ),
        Task.create(
            "Connect the GitHub webhook",
            status=TaskStatus.BACKLOG,
            description="Add the pull_request webhook with the shared secret",
            tags=["github"],
        ),
    ]


class TaskboardRuntime:
    """Owns the event loop thread and the synchronization core."""

    def __init__(
        self,
        config: Config,
        store: Optional[DocumentStore] = None,
        alerter=None,
        seed_tasks: Optional[List[Task]] = None,
    ):
        self.config = config
        self.store = store or build_store(config)
        self.alerter = alerter or build_alerter(config.telegram_token, config.alert_chat_ids)
        self.retry_policy = RetryPolicy(int(config.max_attempts), float(config.base_delay))

        if seed_tasks is None and config.seed_on_first_run:
            seed_tasks = default_seed_tasks()
        self.cache = SyncCache(
            self.store,
            self.retry_policy,
            activity_limit=config.activity_limit,
            seed_tasks=seed_tasks,
        )
        self.recorder = ActivityRecorder(self.cache, self.store, self.retry_policy)
        self.board = BoardViewModel(self.cache, self.recorder)

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, timeout: float = 30) -> bool:
        """Start the loop thread and load the board. False means a connection error."""
        if self.running:
            return self.cache.started
        self.loop = asyncio.new_event_loop()
        ready = threading.Event()

        def run_loop():
            asyncio.set_event_loop(self.loop)
            self.loop.call_soon(ready.set)
            self.loop.run_forever()

        self._thread = threading.Thread(target=run_loop, name="taskboard-loop", daemon=True)
        self._thread.start()
        ready.wait()
        return self.run(self.cache.start(), timeout=timeout)

    def stop(self, timeout: float = 30) -> None:
        if not self.running:
            return
        try:
            self.run(self._shutdown(), timeout=timeout)
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")
        finally:
            self.loop.call_soon_threadsafe(self.loop.stop)
            self._thread.join(timeout)
            self.loop.close()
            self._thread = None

    async def _shutdown(self) -> None:
        await self.cache.close()
        await self.store.close()

    # ── Cross-thread entry points ──

    def run(self, coro, timeout: Optional[float] = None) -> Any:
        """Await a coroutine on the loop and return its result."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def call(self, fn: Callable, *args, **kwargs) -> Any:
        """Run a synchronous function on the loop thread and return its result."""
        async def invoke():
            return fn(*args, **kwargs)

        return self.run(invoke())

    def submit(self, coro) -> concurrent.futures.Future:
        """Schedule a coroutine without waiting for it."""
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    # ── Webhook wiring ──

    def record_activity(self, action: str, subject_title: str, details: Optional[str] = None, source: str = "board"):
        return self.call(self.recorder.record, action, subject_title, details, source=source)

    def send_alert(self, text: str) -> concurrent.futures.Future:
        return self.submit(self.alerter.send(text))
