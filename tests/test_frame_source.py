import base64
import unittest
from unittest.mock import AsyncMock, MagicMock

import cv2
import numpy as np

from src.core.errors import CameraPermissionError, CameraUnavailableError
from src.services.scanner.frame_source import BrowserFrameSource, decode_data_url


def jpeg_data_url(h=48, w=64):
    frame = np.full((h, w, 3), 200, dtype=np.uint8)
    ok, buffer = cv2.imencode('.jpg', frame)
    return "data:image/jpeg;base64," + base64.b64encode(buffer.tobytes()).decode('ascii')


class TestDecodeDataUrl(unittest.TestCase):
    def test_decodes_jpeg(self):
        frame = decode_data_url(jpeg_data_url())
        self.assertEqual(frame.shape, (48, 64, 3))

    def test_bad_input(self):
        self.assertIsNone(decode_data_url(""))
        self.assertIsNone(decode_data_url(None))
        self.assertIsNone(decode_data_url("no-comma"))
        self.assertIsNone(decode_data_url("data:image/jpeg;base64,"))


class TestBrowserFrameSource(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.client = MagicMock()
        self.client.run_javascript = AsyncMock()
        self.source = BrowserFrameSource(self.client)

    async def test_acquire_read_release(self):
        self.client.run_javascript.return_value = {'ok': True}
        await self.source.acquire()
        self.assertTrue(self.source.ready)

        self.client.run_javascript.return_value = jpeg_data_url()
        frame = await self.source.read()
        self.assertEqual(frame.shape, (48, 64, 3))

        await self.source.release()
        self.assertFalse(self.source.ready)
        self.assertEqual(self.client.run_javascript.await_args.args[0], 'stopCamera()')

    async def test_permission_denied(self):
        self.client.run_javascript.return_value = {'ok': False, 'error': 'NotAllowedError'}
        with self.assertRaises(CameraPermissionError):
            await self.source.acquire()
        self.assertFalse(self.source.ready)

    async def test_other_start_failure(self):
        self.client.run_javascript.return_value = {'ok': False, 'error': 'NotFoundError'}
        with self.assertRaises(CameraUnavailableError):
            await self.source.acquire()

    async def test_start_timeout(self):
        self.client.run_javascript.side_effect = TimeoutError("JavaScript did not respond")
        with self.assertRaises(CameraUnavailableError):
            await self.source.acquire()
        self.assertFalse(self.source.ready)

    async def test_sample_read_is_scaled_in_browser(self):
        self.client.run_javascript.return_value = {'ok': True}
        await self.source.acquire()

        self.client.run_javascript.return_value = jpeg_data_url(120, 160)
        frame = await self.source.read((160, 120))

        self.assertEqual(self.client.run_javascript.await_args.args[0], 'grabFrame(160, 120)')
        self.assertEqual(frame.shape, (120, 160, 3))

        await self.source.read()
        self.assertEqual(self.client.run_javascript.await_args.args[0], 'grabFrame()')

    async def test_track_ended(self):
        self.client.run_javascript.return_value = {'ok': True}
        await self.source.acquire()

        self.client.run_javascript.return_value = 'ENDED'
        with self.assertRaises(CameraUnavailableError):
            await self.source.read()
        self.assertFalse(self.source.ready)

    async def test_read_before_acquire(self):
        self.assertIsNone(await self.source.read())
        self.client.run_javascript.assert_not_awaited()


if __name__ == '__main__':
    unittest.main()
