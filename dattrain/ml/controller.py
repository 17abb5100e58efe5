"""Cooperative pause/resume/cancel gate consumed by the trainer loop."""

from __future__ import annotations

import asyncio


class TrainingController:
    """
    Gate the training loop without preempting it.

    ``pause()`` opens a suspension gate that only ``resume()`` or ``abort()``
    release. The loop calls ``wait_if_paused()`` at every checkpoint and must
    check ``aborted`` itself; the controller never interrupts in-flight work.

    All methods must be called from the event loop that runs the trainer.
    """

    def __init__(self) -> None:
        self._aborted = False
        self._paused = False
        self._gate: asyncio.Event | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        """Open a new gate; no-op if already paused."""
        if self._paused:
            return
        self._paused = True
        self._gate = asyncio.Event()

    def resume(self) -> None:
        """Release the current gate; no-op if not paused."""
        if not self._paused:
            return
        self._paused = False
        gate, self._gate = self._gate, None
        if gate is not None:
            gate.set()

    def abort(self) -> None:
        """Flag cancellation and release any open gate so a paused loop can observe it."""
        self._aborted = True
        self.resume()

    async def wait_if_paused(self) -> None:
        """Block until the current gate is released; returns at once when not paused."""
        gate = self._gate
        if self._paused and gate is not None:
            await gate.wait()

    def reset(self) -> None:
        """Clear abort and pause state between runs."""
        gate, self._gate = self._gate, None
        self._aborted = False
        self._paused = False
        if gate is not None:
            gate.set()
