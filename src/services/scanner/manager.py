import logging
from typing import Optional, List, Callable, Any

import numpy as np

from src.core.config import config_manager
from src.core.errors import CameraError, CameraUnavailableError, OcrError
from src.core.models import CaptureConfig, Notice, RecognitionResult, ScanEvent, ScanResult, StabilityConfig
from src.services.export import deliver_csv
from src.services.history import ScanHistory
from src.services.ocr_service import LabelRecognizer
from src.services.scanner.capture import CaptureOutcome, CapturePipeline
from src.services.scanner.stability import StabilityDetector, now_ms

logger = logging.getLogger(__name__)


class ScannerManager:
    """
    Session controller: owns the history, the capture pipeline (and with it the
    processing flag), the stability detector and the active flag. One instance
    per page/session; the UI listens for ScanEvents and calls the methods below.
    """

    def __init__(self, recognizer=None, history: Optional[ScanHistory] = None,
                 stability_config: Optional[StabilityConfig] = None,
                 capture_config: Optional[CaptureConfig] = None,
                 clock: Callable[[], float] = now_ms):
        self.history = history if history is not None else ScanHistory()
        self.recognizer = recognizer or LabelRecognizer()
        self.stability_config = stability_config or config_manager.get_stability_config()
        self.capture_config = capture_config or config_manager.get_capture_config()
        self.clock = clock

        self.pipeline = CapturePipeline(
            self.recognizer.recognize,
            on_result=self._on_result,
            on_error=self._on_ocr_error,
            config=self.capture_config,
        )

        self.frame_source = None
        self.detector: Optional[StabilityDetector] = None
        self.active = False
        self.camera_error: Optional[CameraError] = None
        self.listeners: List[Callable[[ScanEvent], Any]] = []

    # --- Events ---

    def register_listener(self, callback: Callable[[ScanEvent], Any]):
        if callback not in self.listeners:
            self.listeners.append(callback)

    def unregister_listener(self, callback: Callable[[ScanEvent], Any]):
        if callback in self.listeners:
            self.listeners.remove(callback)

    def _emit(self, event_type: str, **data):
        event = ScanEvent(type=event_type, data=data)
        for listener in list(self.listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener failed on {event_type}: {e}", exc_info=True)

    def _notify(self, notice: Notice):
        self._emit('notice', message=notice.message, level=notice.level)

    # --- State ---

    @property
    def is_processing(self) -> bool:
        return self.pipeline.is_processing

    def get_status(self) -> str:
        if self.camera_error is not None:
            return "Camera Error"
        if self.is_processing:
            return "Processing..."
        if not self.active:
            return "Paused"
        return "Idle"

    # --- Scanning lifecycle ---

    def attach_frame_source(self, frame_source):
        self.frame_source = frame_source
        self.detector = StabilityDetector(
            frame_source,
            self._capture,
            is_busy=lambda: self.pipeline.is_processing,
            config=self.stability_config,
            on_camera_error=self._on_camera_error,
            clock=self.clock,
        )

    async def activate(self):
        if self.active or self.detector is None:
            return
        self.camera_error = None
        try:
            await self.detector.start()
        except CameraError as e:
            self._on_camera_error(e)
            return
        except TimeoutError:
            self._on_camera_error(CameraUnavailableError())
            return
        self.active = True
        self._emit('status_update', status=self.get_status())

    async def deactivate(self):
        self.active = False
        if self.detector is not None:
            await self.detector.stop()
        self._emit('status_update', status=self.get_status())

    async def toggle_active(self):
        if self.active:
            await self.deactivate()
        else:
            await self.activate()

    async def restart_camera(self):
        """Explicit recovery after a camera failure: release, then reacquire."""
        logger.info("Restarting camera")
        await self.deactivate()
        await self.activate()

    def _on_camera_error(self, error: CameraError):
        logger.error(f"Camera error: {error.message}")
        self.active = False
        self.camera_error = error
        self._emit('camera_error', message=error.message)
        self._notify(Notice(message=error.message, level="error"))

    # --- Capture ---

    async def _capture(self, frame: Optional[np.ndarray]) -> CaptureOutcome:
        if self.pipeline.is_processing:
            return CaptureOutcome.BUSY
        self._emit('scan_started')
        outcome = await self.pipeline.capture(frame)
        self._emit('scan_finished', outcome=outcome.value)
        return outcome

    async def trigger_capture(self) -> CaptureOutcome:
        """Manual shutter. Ignored while a recognition is in flight."""
        if self.pipeline.is_processing:
            return CaptureOutcome.BUSY
        if not self.active or self.frame_source is None or not self.frame_source.ready:
            return CaptureOutcome.DROPPED
        try:
            frame = await self.frame_source.read()
        except CameraError as e:
            await self.detector.stop()
            self._on_camera_error(e)
            return CaptureOutcome.DROPPED
        except TimeoutError:
            logger.debug("Manual capture dropped, frame grab timed out")
            return CaptureOutcome.DROPPED
        self.detector.mark_captured()
        return await self._capture(frame)

    def _on_result(self, result: RecognitionResult):
        # Results landing after deactivation are still recorded.
        outcome = self.history.ingest(result)
        self._notify(outcome.notice)
        if outcome.record is not None:
            self._emit('history_changed', count=len(self.history))

    def _on_ocr_error(self, error: OcrError):
        self._notify(Notice(message=error.message, level="error"))

    # --- History ---

    @property
    def records(self) -> List[ScanResult]:
        return self.history.records

    def edit_sn(self, record_id: str, value: Optional[str]) -> Optional[ScanResult]:
        record = self.history.edit_sn(record_id, value)
        if record is not None:
            self._emit('history_changed', count=len(self.history))
        return record

    def delete(self, record_id: str) -> bool:
        removed = self.history.delete(record_id)
        if removed:
            self._emit('history_changed', count=len(self.history))
        return removed

    async def reset_batch(self, confirmed: bool) -> bool:
        if not self.history.reset_batch(confirmed):
            return False
        self._emit('history_changed', count=0)
        self._notify(Notice(message="批次已重置", level="info"))
        await self.activate()
        return True

    async def export_csv(self, share, download) -> Optional[str]:
        return await deliver_csv(self.history.records, share, download)
