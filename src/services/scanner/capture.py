import asyncio
import logging
from enum import Enum
from typing import Optional, Callable, Awaitable, Any

import cv2
import numpy as np

from src.core.errors import OcrError, ServiceError
from src.core.models import CaptureConfig, RecognitionResult

logger = logging.getLogger(__name__)


class CaptureOutcome(Enum):
    RECOGNIZED = "recognized"
    FAILED = "failed"    # OCR raised, already reported through on_error
    DROPPED = "dropped"  # no frame or empty payload, nothing sent
    BUSY = "busy"        # another capture is in flight, request ignored


def crop_label_region(frame: np.ndarray, width_ratio: float = 0.85, aspect_ratio: float = 85.6 / 54) -> np.ndarray:
    """
    Cuts the centered label-sized box out of a frame: width_ratio of the frame
    width, height from the fixed aspect ratio. On very wide aspect frames the
    box is scaled down to fit the height so the ratio is always kept.
    """
    fh, fw = frame.shape[:2]
    box_w = fw * width_ratio
    box_h = box_w / aspect_ratio
    if box_h > fh:
        box_h = float(fh)
        box_w = box_h * aspect_ratio

    w = max(1, int(box_w))
    h = max(1, int(box_h))
    x = (fw - w) // 2
    y = (fh - h) // 2
    return frame[y:y + h, x:x + w]


def encode_jpeg(image: np.ndarray, quality: int = 80) -> bytes:
    ok, buffer = cv2.imencode('.jpg', image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        return b""
    return buffer.tobytes()


class CapturePipeline:
    """
    Crops, encodes and sends one frame to the recognizer at a time.
    Requests arriving while one is in flight are dropped, not queued.
    """

    def __init__(self, recognize: Callable[[bytes], Awaitable[RecognitionResult]],
                 on_result: Callable[[RecognitionResult], Any],
                 on_error: Callable[[OcrError], Any],
                 config: Optional[CaptureConfig] = None):
        self.recognize = recognize
        self.on_result = on_result
        self.on_error = on_error
        self.config = config or CaptureConfig()

        self.is_processing = False
        self.in_flight: Optional[asyncio.Task] = None

    def prepare(self, frame: Optional[np.ndarray]) -> Optional[bytes]:
        """Crop + encode. Returns None when there is nothing worth sending."""
        if frame is None or frame.size == 0:
            return None
        crop = crop_label_region(frame, self.config.width_ratio, self.config.aspect_ratio)
        payload = encode_jpeg(crop, self.config.jpeg_quality)
        if len(payload) < self.config.min_payload_bytes:
            return None
        return payload

    async def capture(self, frame: Optional[np.ndarray]) -> CaptureOutcome:
        if self.is_processing:
            logger.debug("Capture ignored, recognition already in flight")
            return CaptureOutcome.BUSY

        payload = self.prepare(frame)
        if payload is None:
            logger.debug("Capture dropped, empty payload")
            return CaptureOutcome.DROPPED

        self.is_processing = True
        self.in_flight = asyncio.create_task(self.recognize(payload))
        try:
            logger.info(f"Sending capture ({len(payload)} bytes) for recognition")
            result = await self.in_flight
            self.on_result(result)
        except OcrError as e:
            logger.warning(f"Recognition failed: {e.message}")
            self.on_error(e)
            return CaptureOutcome.FAILED
        except Exception as e:
            logger.error(f"Unexpected recognition failure: {e}", exc_info=True)
            self.on_error(ServiceError())
            return CaptureOutcome.FAILED
        finally:
            self.is_processing = False
            self.in_flight = None

        return CaptureOutcome.RECOGNIZED
