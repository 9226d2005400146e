import asyncio
import logging
from time import time
from typing import Any, Awaitable, Callable, Coroutine, NoReturn, Optional, Set

import sentry_sdk

from social.graze.gatekeeper.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.gatekeeper.model.health import HealthGauge

logger = logging.getLogger(__name__)


class TaskRejectedError(Exception):
    """
    Raised when work is submitted to a runner that is not accepting it.
    """

    @staticmethod
    def not_started(name: str) -> "TaskRejectedError":
        """The runner has not been started yet."""
        return TaskRejectedError(
            f"error-gatekeeper-3000 Task runner not started, rejected {name}"
        )

    @staticmethod
    def shutting_down(name: str) -> "TaskRejectedError":
        """The runner is shutting down or already stopped."""
        return TaskRejectedError(
            f"error-gatekeeper-3001 Task runner shutting down, rejected {name}"
        )


class TaskProcessor:
    """
    Generic task processor with timing, metrics, and error handling.
    """

    def __init__(
        self,
        metrics_client: MetricsClient,
        worker_id: str,
        task_type: str,
        health_gauge: Optional[HealthGauge] = None,
    ):
        self.metrics_client = metrics_client
        self.worker_id = worker_id
        self.task_type = task_type
        self.health_gauge = health_gauge

    async def process_task(
        self,
        task_id: str,
        task_func: Callable[..., Awaitable[Any]],
        *args,
        **kwargs,
    ) -> bool:
        """
        Process a single task with timing and metrics.
        Returns True on success, False on failure.
        """
        start_time = time()

        try:
            await task_func(*args, **kwargs)
            return True
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Error processing task %s", task_id)
            if self.health_gauge is not None:
                await self.health_gauge.womp()

            self.metrics_client.increment(
                f"gatekeeper.task.{self.task_type}.exception",
                1,
                tag_dict={
                    "exception": type(e).__name__,
                    "task_id": task_id,
                    "worker_id": self.worker_id,
                },
            )
            return False
        finally:
            self.metrics_client.timer(
                f"gatekeeper.task.{self.task_type}.time",
                time() - start_time,
                tag_dict={"worker_id": self.worker_id},
            )
            self.metrics_client.increment(
                f"gatekeeper.task.{self.task_type}.count",
                1,
                tag_dict={"worker_id": self.worker_id},
            )


class BackgroundTaskRunner:
    """
    Owns every background coroutine the service starts.

    The runner is constructed explicitly and handed to the components that need
    it. Work submitted before `start` or after `shutdown` begins is rejected with
    `TaskRejectedError`. Failures inside submitted work are logged, reported to
    sentry and counted, and never propagate to the event loop.

    On shutdown, in-flight one-shot tasks get `grace_seconds` to finish before
    they are cancelled. Periodic tasks are cancelled immediately.
    """

    def __init__(
        self,
        metrics_client: Optional[MetricsClient] = None,
        worker_id: str = "local",
        health_gauge: Optional[HealthGauge] = None,
    ) -> None:
        metrics_client = metrics_client or NoOpMetricsClient()
        self.background = TaskProcessor(
            metrics_client, worker_id, "background", health_gauge
        )
        self.periodic = TaskProcessor(metrics_client, worker_id, "periodic", health_gauge)
        self._tasks: Set[asyncio.Task] = set()
        self._periodic_tasks: Set[asyncio.Task] = set()
        self._started = False
        self._closing = False

    @property
    def running(self) -> bool:
        return self._started and not self._closing

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def start(self) -> None:
        if self._closing:
            raise TaskRejectedError.shutting_down("start")
        self._started = True

    def submit(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        if not self.running:
            coro.close()
            if self._closing:
                raise TaskRejectedError.shutting_down(name)
            raise TaskRejectedError.not_started(name)

        task = asyncio.get_running_loop().create_task(
            self.background.process_task(name, lambda: coro), name=name
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def schedule_periodic(
        self,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        name: str,
    ) -> asyncio.Task:
        if self._closing:
            raise TaskRejectedError.shutting_down(name)
        if not self._started:
            raise TaskRejectedError.not_started(name)

        async def loop() -> NoReturn:
            while True:
                await asyncio.sleep(interval_seconds)
                await self.periodic.process_task(name, func)

        task = asyncio.get_running_loop().create_task(loop(), name=name)
        self._periodic_tasks.add(task)
        task.add_done_callback(self._periodic_tasks.discard)
        return task

    async def shutdown(self, grace_seconds: float = 5.0) -> None:
        if self._closing:
            return
        self._closing = True
        logger.info(
            "Shutting down background tasks: %d pending, %d periodic",
            len(self._tasks),
            len(self._periodic_tasks),
        )

        periodic = list(self._periodic_tasks)
        for task in periodic:
            task.cancel()

        in_flight = list(self._tasks)
        if in_flight:
            _, still_running = await asyncio.wait(in_flight, timeout=grace_seconds)
            for task in still_running:
                logger.warning("Cancelling background task %s", task.get_name())
                task.cancel()

        await asyncio.gather(*periodic, *in_flight, return_exceptions=True)

