from __future__ import annotations

"""
Decide when an ended recording session is safe to finalize.

Design intent:
- Do not drop the last utterance whose transcription is still in flight.
- Bound the wait with a grace timer when nothing more is coming.
- Finalize exactly once; every path funnels through `_finalize`.

All methods must be called from the event loop thread that owns the session.
"""

import asyncio
import logging
from typing import Any, Callable, Literal, Optional

from meditalk.consultation.models import ConsultationMessage
from meditalk.consultation.transcript import TranscriptAccumulator

WaiterState = Literal["idle", "recording", "awaiting_drain", "finalized"]
FinalizeCallback = Callable[[list[ConsultationMessage]], None]
Scheduler = Callable[[float, Callable[[], None]], Any]

DEFAULT_GRACE_SECONDS = 3.0

logger = logging.getLogger(__name__)


class WaiterStateError(RuntimeError):
    """Raised when a waiter transition is requested from the wrong state."""


def _loop_scheduler(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class RecordingCompletionWaiter:
    def __init__(
        self,
        transcript: TranscriptAccumulator,
        on_finalized: FinalizeCallback,
        *,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        schedule: Optional[Scheduler] = None,
    ) -> None:
        self._transcript = transcript
        self._on_finalized = on_finalized
        self._grace_seconds = max(0.0, float(grace_seconds))
        self._schedule = schedule or _loop_scheduler
        self._state: WaiterState = "idle"
        self._capture_active = False
        self._in_flight = 0
        self._message_count_at_request = 0
        self._timer: Any = None
        transcript.subscribe(self._on_message)

    @property
    def state(self) -> WaiterState:
        return self._state

    @property
    def capture_active(self) -> bool:
        return self._capture_active

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def message_count_at_request(self) -> int:
        return self._message_count_at_request

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None

    def is_active(self) -> bool:
        return self._capture_active or self._in_flight > 0

    def start_recording(self) -> None:
        if self._state == "finalized":
            raise WaiterStateError("Session already finalized; reset before recording again.")
        if self._state == "awaiting_drain":
            raise WaiterStateError("Session is ending; cannot start recording.")
        self._state = "recording"
        self.set_capture_active(True)

    def set_capture_active(self, active: bool) -> None:
        self._capture_active = bool(active)
        self._check_drain()

    def transcription_started(self) -> None:
        self._in_flight += 1
        self._check_drain()

    def transcription_finished(self) -> None:
        self._in_flight = max(0, self._in_flight - 1)
        self._check_drain()

    def request_end(self) -> bool:
        """Handle an end-session request; return True once finalized."""
        if self._state == "idle":
            raise WaiterStateError("No recording has been started; nothing to end.")
        if self._state in {"awaiting_drain", "finalized"}:
            return self._state == "finalized"

        if not self.is_active():
            self._finalize("immediate")
            return True

        self._message_count_at_request = len(self._transcript)
        self._state = "awaiting_drain"
        logger.info(
            "end requested while active capture=%s in_flight=%d messages=%d",
            self._capture_active,
            self._in_flight,
            self._message_count_at_request,
        )
        # Stopping capture is unconditional; in-flight transcriptions still land.
        self._capture_active = False
        self._check_drain()
        return self._state == "finalized"

    def reset(self) -> None:
        self._cancel_timer()
        self._state = "idle"
        self._capture_active = False
        self._in_flight = 0
        self._message_count_at_request = 0

    def _on_message(self, message: ConsultationMessage) -> None:
        _ = message
        self._check_drain()

    def _check_drain(self) -> None:
        if self._state != "awaiting_drain":
            return
        if len(self._transcript) > self._message_count_at_request:
            self._finalize("new_message")
            return
        if self.is_active():
            # Something is still running; the timer only counts idle time.
            self._cancel_timer()
            return
        if self._timer is None:
            self._timer = self._schedule(self._grace_seconds, self._on_grace_elapsed)

    def _on_grace_elapsed(self) -> None:
        self._timer = None
        if self._state != "awaiting_drain":
            return
        if len(self._transcript) > self._message_count_at_request:
            self._finalize("new_message")
            return
        if self.is_active():
            return
        self._finalize("grace_timeout")

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()

    def _finalize(self, reason: str) -> None:
        if self._state == "finalized":
            return
        self._cancel_timer()
        self._state = "finalized"
        self._capture_active = False
        snapshot = self._transcript.snapshot()
        logger.info("session finalized reason=%s messages=%d", reason, len(snapshot))
        self._on_finalized(snapshot)
