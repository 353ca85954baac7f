"""Scripted phase runners for engine tests."""

from __future__ import annotations

import asyncio
import copy
import inspect
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, List, Optional

from phaseflow.runners import PhaseRunner, ProgressChunk, RunnerRequest, RunnerResult


class ScriptedRunner(PhaseRunner):
    """Replay scripted results per phase id.

    ``scripts`` maps a phase id to one entry per invocation; the last entry
    repeats. An entry is an output value, an exception to raise, or a
    callable taking the :class:`RunnerRequest` (sync or async) whose return
    value becomes the output. Unscripted phases return ``{"text": "<id> done"}``.
    """

    def __init__(
        self,
        scripts: Optional[Dict[str, List[Any]]] = None,
        delays: Optional[Dict[str, float]] = None,
    ) -> None:
        self.scripts = scripts or {}
        self.delays = delays or {}
        self.calls: List[RunnerRequest] = []
        self.finished: List[str] = []
        self._counts: Dict[str, int] = defaultdict(int)
        self.closed = False

    def calls_for(self, phase_id: str) -> List[RunnerRequest]:
        return [c for c in self.calls if c.phase_id == phase_id]

    async def run(self, request: RunnerRequest) -> AsyncIterator[Any]:
        self.calls.append(request)
        position = self._counts[request.phase_id]
        self._counts[request.phase_id] += 1

        script = self.scripts.get(request.phase_id)
        if script:
            entry = script[min(position, len(script) - 1)]
        else:
            entry = {"text": f"{request.phase_id} done"}

        yield ProgressChunk(text=f"{request.phase_id} working")
        delay = self.delays.get(request.phase_id)
        if delay:
            await asyncio.sleep(delay)

        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            entry = entry(request)
            if inspect.isawaitable(entry):
                entry = await entry
        self.finished.append(request.phase_id)
        yield RunnerResult(output=copy.deepcopy(entry))

    async def aclose(self) -> None:
        self.closed = True


async def wait_until(check, timeout: float = 2.0, interval: float = 0.01) -> Any:
    """Poll ``check`` (sync or async) until it returns a truthy value."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = check()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)
