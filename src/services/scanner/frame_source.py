import base64
import logging
from typing import Optional, Protocol, Tuple

import cv2
import numpy as np
from nicegui import run

from src.core.errors import CameraPermissionError, CameraUnavailableError

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    @property
    def ready(self) -> bool:
        ...

    async def acquire(self) -> None:
        ...

    async def release(self) -> None:
        ...

    async def read(self, size: Optional[Tuple[int, int]] = None) -> Optional[np.ndarray]:
        """Current frame, scaled to `size` (width, height) when given."""
        ...


def decode_data_url(data_url: str) -> Optional[np.ndarray]:
    """Decodes a `data:image/...;base64,` URL into a BGR frame."""
    if not data_url or "," not in data_url:
        return None
    _, encoded = data_url.split(",", 1)
    try:
        raw = base64.b64decode(encoded)
    except ValueError:
        return None
    if not raw:
        return None
    return cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_COLOR)


class BrowserFrameSource:
    """
    Frames from the phone camera, pulled through the page's JavaScript
    (see JS_CAMERA_CODE in src/ui/scan.py).
    """

    def __init__(self, client, timeout: float = 5.0):
        self.client = client
        self.timeout = timeout
        self._acquired = False

    @property
    def ready(self) -> bool:
        return self._acquired

    async def acquire(self) -> None:
        if self._acquired:
            return
        try:
            result = await self.client.run_javascript('startCamera()', timeout=20.0)
        except TimeoutError:
            # Permission prompt left unanswered
            logger.error("Browser camera did not start in time")
            raise CameraUnavailableError()
        if isinstance(result, dict) and result.get('ok'):
            self._acquired = True
            logger.info("Browser camera started")
            return

        error_name = result.get('error') if isinstance(result, dict) else None
        logger.error(f"Browser camera failed to start: {error_name}")
        if error_name == 'NotAllowedError':
            raise CameraPermissionError()
        raise CameraUnavailableError()

    async def release(self) -> None:
        if not self._acquired:
            return
        self._acquired = False
        try:
            await self.client.run_javascript('stopCamera()', timeout=self.timeout)
        except TimeoutError:
            logger.warning("Timed out stopping browser camera")
        logger.info("Browser camera released")

    async def read(self, size: Optional[Tuple[int, int]] = None) -> Optional[np.ndarray]:
        if not self._acquired:
            return None
        # Scaled in the browser so only the small sample crosses the connection.
        call = f'grabFrame({size[0]}, {size[1]})' if size else 'grabFrame()'
        data_url = await self.client.run_javascript(call, timeout=self.timeout)
        if data_url == 'ENDED':
            # Track stopped underneath us (device unplugged, permission revoked).
            self._acquired = False
            raise CameraUnavailableError()
        return decode_data_url(data_url)


class DeviceFrameSource:
    """Frames from a camera attached to the server, via OpenCV."""

    def __init__(self, camera_index: int = 0, width: int = 1280, height: int = 720):
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self._cap = None

    @property
    def ready(self) -> bool:
        return self._cap is not None

    def _open(self):
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailableError()
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        return cap

    async def acquire(self) -> None:
        if self._cap is not None:
            return
        self._cap = await run.io_bound(self._open)
        logger.info(f"Camera {self.camera_index} opened")

    async def release(self) -> None:
        cap, self._cap = self._cap, None
        if cap is not None:
            await run.io_bound(cap.release)
            logger.info(f"Camera {self.camera_index} released")

    async def read(self, size: Optional[Tuple[int, int]] = None) -> Optional[np.ndarray]:
        cap = self._cap
        if cap is None:
            return None
        ret, frame = await run.io_bound(cap.read)
        if not ret:
            return None
        if size:
            frame = cv2.resize(frame, size, interpolation=cv2.INTER_AREA)
        return frame
