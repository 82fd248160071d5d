# run_control.py

import asyncio
from typing import Any, Awaitable, Optional

from scenario_errors import RunCancelledError
from scenario_logging import get_logger

logger = get_logger("control")

RESUME = "resume"
SKIP = "skip"


async def race_cancel(awaitable: Awaitable[Any], cancel_event: Optional[asyncio.Event], message: str = "Run cancelled") -> Any:
    """
    Awaits 'awaitable' unless cancel_event is set first, in which case the
    awaitable is cancelled and RunCancelledError(message) is raised.
    """
    if cancel_event is None:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    cancel_waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancel_waiter.cancel()
        if not task.done():
            task.cancel()
    if task in done:
        return task.result()
    await asyncio.gather(task, return_exceptions=True)
    raise RunCancelledError(message)


class RunControl:
    """
    Per-run signals: cancellation plus the resume/skip answer for a step
    waiting in WAITING_FOR_INPUT. Shared between the executor task and
    whoever drives the run (API handlers, CLI).
    """

    def __init__(self):
        self._cancel_event = asyncio.Event()
        self._input_event = asyncio.Event()
        self._decision: Optional[str] = None
        self.waiting_step_id: Optional[str] = None

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self):
        if not self.cancelled:
            logger.info("Cancellation requested.")
        self._cancel_event.set()

    def _answer(self, decision: str, step_id: Optional[str]) -> bool:
        if self.waiting_step_id is None:
            logger.warning(f"Ignoring '{decision}': no step is waiting for input.")
            return False
        if step_id and step_id != self.waiting_step_id:
            logger.warning(f"Ignoring '{decision}' for step '{step_id}': waiting step is '{self.waiting_step_id}'.")
            return False
        self._decision = decision
        self._input_event.set()
        return True

    def resume(self, step_id: Optional[str] = None) -> bool:
        return self._answer(RESUME, step_id)

    def skip(self, step_id: Optional[str] = None) -> bool:
        return self._answer(SKIP, step_id)

    async def guard(self, awaitable: Awaitable[Any]) -> Any:
        """Awaits 'awaitable' unless the run is cancelled first, in which case it is cancelled too."""
        return await race_cancel(awaitable, self._cancel_event)

    async def sleep(self, seconds: float):
        await self.guard(asyncio.sleep(seconds))

    async def wait_for_input(self, step_id: str) -> str:
        """Blocks until resume() or skip() answers for 'step_id'. Returns RESUME or SKIP."""
        self._decision = None
        self._input_event.clear()
        self.waiting_step_id = step_id
        logger.info(f"Step '{step_id}' is waiting for input (resume or skip).")
        try:
            await self.guard(self._input_event.wait())
        finally:
            self.waiting_step_id = None
        return self._decision
