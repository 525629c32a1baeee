import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple, Callable, Awaitable, Any

import cv2
import numpy as np

from src.core.errors import CameraError
from src.core.models import StabilityConfig

logger = logging.getLogger(__name__)


class StabilityAction(Enum):
    SKIP = "skip"          # busy, inactive, cooling down or no frame
    BASELINE = "baseline"  # first sample, nothing to compare against
    MOTION = "motion"
    STABLE = "stable"      # still, but not for long enough
    CAPTURE = "capture"


@dataclass(frozen=True)
class StabilityState:
    last_sample: Optional[np.ndarray] = None
    stable_since: Optional[float] = None  # ms, None when not currently stable
    cooldown_until: float = 0.0           # ms


def now_ms() -> float:
    return time.monotonic() * 1000.0


def downsample(frame: np.ndarray, config: StabilityConfig) -> np.ndarray:
    """Shrinks a frame to the fixed comparison size."""
    return cv2.resize(frame, (config.sample_width, config.sample_height), interpolation=cv2.INTER_AREA)


def frame_difference(current: np.ndarray, previous: np.ndarray, stride: int) -> float:
    """
    Mean absolute difference of every `stride`-th byte, normalized to [0, 1].
    """
    cur = current.reshape(-1)[::stride].astype(np.int16)
    prev = previous.reshape(-1)[::stride].astype(np.int16)
    if cur.size == 0:
        return 0.0
    return float(np.abs(cur - prev).sum()) / (cur.size * 255.0)


def step(state: StabilityState, frame: Optional[np.ndarray], now: float, *,
         busy: bool, active: bool, config: StabilityConfig) -> Tuple[StabilityState, StabilityAction]:
    """
    One detector tick. Pure: returns the next state and what the caller should do.
    Skipped ticks leave the baseline untouched so timing resumes cleanly
    once the in-flight request or cooldown is over.
    """
    if busy or not active or now < state.cooldown_until or frame is None:
        return state, StabilityAction.SKIP

    sample = downsample(frame, config)

    if state.last_sample is None or state.last_sample.shape != sample.shape:
        return replace(state, last_sample=sample, stable_since=None), StabilityAction.BASELINE

    diff = frame_difference(sample, state.last_sample, config.sample_stride)

    if diff < config.threshold:
        if state.stable_since is None:
            return replace(state, last_sample=sample, stable_since=now), StabilityAction.STABLE
        if now - state.stable_since > config.min_stable_ms:
            next_state = StabilityState(
                last_sample=sample,
                stable_since=None,
                cooldown_until=now + config.cooldown_ms,
            )
            return next_state, StabilityAction.CAPTURE
        return replace(state, last_sample=sample), StabilityAction.STABLE

    return replace(state, last_sample=sample, stable_since=None), StabilityAction.MOTION


def mark_captured(state: StabilityState, now: float, config: StabilityConfig) -> StabilityState:
    """Starts the cooldown after any capture, manual ones included."""
    return replace(state, stable_since=None, cooldown_until=now + config.cooldown_ms)


class StabilityDetector:
    """
    Runs `step` on a cancellable asyncio loop against a frame source and fires
    `on_capture(frame)` when the scene has been still long enough.
    """

    def __init__(self, frame_source, on_capture: Callable[[np.ndarray], Awaitable[Any]], *,
                 is_busy: Callable[[], bool],
                 config: Optional[StabilityConfig] = None,
                 on_camera_error: Optional[Callable[[CameraError], Any]] = None,
                 clock: Callable[[], float] = now_ms):
        self.frame_source = frame_source
        self.on_capture = on_capture
        self.is_busy = is_busy
        self.config = config or StabilityConfig()
        self.on_camera_error = on_camera_error
        self.clock = clock

        self.state = StabilityState()
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._capture_task: Optional[asyncio.Task] = None

    async def start(self):
        """Acquires the frame source and starts a fresh polling loop."""
        if self.running:
            return
        await self.frame_source.acquire()
        self.state = StabilityState()
        self.running = True
        self._task = asyncio.create_task(self._run())
        logger.info("Stability detector started")

    async def stop(self):
        """Stops polling and releases the frame source."""
        was_running = self.running
        self.running = False
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.frame_source.release()
        if was_running:
            logger.info("Stability detector stopped")

    def mark_captured(self):
        self.state = mark_captured(self.state, self.clock(), self.config)

    async def tick(self) -> StabilityAction:
        frame = None
        busy = self.is_busy()
        now = self.clock()
        # Only pull a sample when it will actually be compared.
        if self.running and not busy and now >= self.state.cooldown_until and self.frame_source.ready:
            frame = await self.frame_source.read((self.config.sample_width, self.config.sample_height))

        self.state, action = step(self.state, frame, now, busy=busy, active=self.running, config=self.config)

        if action == StabilityAction.CAPTURE:
            logger.info("Frame stable, triggering capture")
            full_frame = await self.frame_source.read()
            self._capture_task = asyncio.create_task(self.on_capture(full_frame))
        return action

    async def _run(self):
        while self.running:
            try:
                await self.tick()
            except CameraError as e:
                logger.error(f"Camera failure, stopping detector: {e}")
                self.running = False
                self._task = None
                await self.frame_source.release()
                if self.on_camera_error:
                    self.on_camera_error(e)
                return
            except asyncio.CancelledError:
                raise
            except TimeoutError as e:
                logger.warning(f"Frame grab timed out: {e}")
            except Exception as e:
                logger.error(f"Error in stability check: {e}", exc_info=True)
            await asyncio.sleep(self.config.poll_interval)
