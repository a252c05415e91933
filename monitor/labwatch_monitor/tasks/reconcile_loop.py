"""
机群汇总定时任务 (Fleet Reconciliation Scheduled Task)

按固定周期触发汇总。每次触发都创建独立任务，不等待上一次完成；
上一次仍在执行时，FleetReconciler 的重叠保护会跳过本次。
停止时允许进行中的汇总执行完毕，但丢弃其结果。

Fires a reconciliation every interval as its own task; the reconciler's
overlap guard skips ticks that arrive while one is still running.
"""
import asyncio
import logging
from typing import Callable, Optional, Set

from labwatch_shared.timeutil import wait_or_stop
from labwatch_monitor.services.reconciler import FleetReconciler, ReconcileResult

logger = logging.getLogger(__name__)

ResultHandler = Callable[[ReconcileResult], None]


class ReconcileLoop:
    """汇总循环"""

    def __init__(self, reconciler: FleetReconciler, interval: float = 3.0,
                 on_result: Optional[ResultHandler] = None):
        self.reconciler = reconciler
        self.interval = interval
        self.on_result = on_result
        self.stop_event = asyncio.Event()
        self._inflight: Set[asyncio.Task] = set()

    def stop(self) -> None:
        self.stop_event.set()

    async def _run_tick(self) -> None:
        try:
            result = await self.reconciler.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Reconciliation crashed")
            return
        if result is None or self.stop_event.is_set():
            return
        if self.on_result is not None:
            try:
                self.on_result(result)
            except Exception:
                logger.exception("Reconcile result handler failed")

    def trigger(self) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run_tick())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def run(self) -> None:
        logger.info(f"Reconcile loop started (interval {self.interval}s)")
        while not self.stop_event.is_set():
            self.trigger()
            if await wait_or_stop(self.stop_event, self.interval):
                break

        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info(f"Reconcile loop stopped ({self.reconciler.skipped} ticks skipped)")
