from nicegui import ui
import base64
import logging
import queue
from typing import Optional

from src.core.config import config_manager
from src.core.models import ScanEvent, ScanResult
from src.services.export import ShareOutcome
from src.services.scanner.frame_source import BrowserFrameSource, DeviceFrameSource
from src.services.scanner.manager import ScannerManager

logger = logging.getLogger(__name__)

NOTIFY_TYPES = {'info': 'info', 'warning': 'warning', 'error': 'negative'}

JS_CAMERA_CODE = """
<script>
window.scannerVideo = null;
window.scannerStream = null;
window.grabCanvas = null;

function initScanner() {
    window.scannerVideo = document.getElementById('scanner-video');
    if (!window.grabCanvas) window.grabCanvas = document.createElement('canvas');
}

async function startCamera() {
    if (!window.scannerVideo) initScanner();
    if (!window.scannerVideo) return { ok: false, error: 'NoVideoElement' };
    if (!navigator.mediaDevices || !navigator.mediaDevices.getUserMedia) {
        return { ok: false, error: 'NotSupportedError' };
    }
    if (window.scannerStream) stopCamera();

    try {
        window.scannerStream = await navigator.mediaDevices.getUserMedia({
            video: {
                facingMode: 'environment',
                width: { ideal: 1280 },
                height: { ideal: 720 }
            }
        });
        window.scannerVideo.srcObject = window.scannerStream;
        await window.scannerVideo.play();
        return { ok: true };
    } catch (err) {
        console.error("Error accessing camera:", err);
        return { ok: false, error: err.name };
    }
}

function stopCamera() {
    if (window.scannerStream) {
        window.scannerStream.getTracks().forEach(track => track.stop());
        window.scannerStream = null;
    }
    if (window.scannerVideo) {
        window.scannerVideo.srcObject = null;
    }
    return true;
}

function grabFrame(width, height) {
    const video = window.scannerVideo;
    if (window.scannerStream) {
        const tracks = window.scannerStream.getVideoTracks();
        if (tracks.length && tracks[0].readyState === 'ended') return 'ENDED';
    }
    if (!video || video.readyState < 2 || !video.videoWidth) return null;

    const canvas = window.grabCanvas;
    canvas.width = width || video.videoWidth;
    canvas.height = height || video.videoHeight;
    canvas.getContext('2d', { alpha: false }).drawImage(video, 0, 0, canvas.width, canvas.height);
    return canvas.toDataURL('image/jpeg', 0.85);
}

async function shareCsv(b64, filename) {
    try {
        const bytes = Uint8Array.from(atob(b64), c => c.charCodeAt(0));
        const file = new File([bytes], filename, { type: 'text/csv' });
        if (!navigator.canShare || !navigator.canShare({ files: [file] })) return 'unsupported';
        await navigator.share({ files: [file], title: filename });
        return 'shared';
    } catch (err) {
        if (err && err.name === 'AbortError') return 'cancelled';
        console.error("Share failed:", err);
        return 'unsupported';
    }
}
</script>
"""


class ScanPage:
    def __init__(self, manager: Optional[ScannerManager] = None):
        self.manager = manager or ScannerManager()
        self.event_queue: "queue.Queue[ScanEvent]" = queue.Queue()

        self.edit_dialog = None
        self.edit_input = None
        self.editing_id: Optional[str] = None
        self.confirm_dialog = None

        self.manager.register_listener(self.on_scanner_event)

    def on_scanner_event(self, event: ScanEvent):
        # May be called from the detector task; UI work happens in event_consumer.
        self.event_queue.put(event)

    async def start(self, client):
        source_kind = config_manager.get_frame_source()
        if source_kind == 'device':
            source = DeviceFrameSource(config_manager.get_camera_index())
        else:
            source = BrowserFrameSource(client)
        self.manager.attach_frame_source(source)
        await self.manager.activate()
        self.refresh_all()

    async def cleanup(self):
        self.manager.unregister_listener(self.on_scanner_event)
        await self.manager.deactivate()

    def event_consumer(self):
        """Drains manager events and updates the UI."""
        changed = False
        while True:
            try:
                event = self.event_queue.get_nowait()
            except queue.Empty:
                break

            if event.type == 'notice':
                level = event.data.get('level', 'info')
                ui.notify(event.data.get('message', ''),
                          type=NOTIFY_TYPES.get(level, 'info'),
                          timeout=5000 if level == 'error' else 3000,
                          position='top')
            changed = True

        if changed:
            self.refresh_all()

    def refresh_all(self):
        self.render_status.refresh()
        self.render_camera_error.refresh()
        self.render_history.refresh()
        self.render_controls.refresh()

    # --- Actions ---

    async def toggle_scanning(self):
        await self.manager.toggle_active()
        self.refresh_all()

    async def manual_capture(self):
        await self.manager.trigger_capture()

    async def restart_camera(self):
        await self.manager.restart_camera()
        self.refresh_all()

    def delete_record(self, record_id: str):
        self.manager.delete(record_id)
        self.render_history.refresh()
        self.render_controls.refresh()

    def open_edit(self, item: ScanResult):
        self.editing_id = item.id
        self.edit_input.value = item.sn or ''
        self.edit_dialog.open()

    def save_edit(self):
        if self.editing_id:
            self.manager.edit_sn(self.editing_id, self.edit_input.value)
        self.editing_id = None
        self.edit_dialog.close()
        self.render_history.refresh()

    async def reset_batch(self):
        if self.manager.history.is_empty():
            return
        confirmed = await self.confirm_dialog
        await self.manager.reset_batch(bool(confirmed))
        self.refresh_all()

    async def share_csv(self, payload: bytes, filename: str) -> ShareOutcome:
        b64 = base64.b64encode(payload).decode('ascii')
        try:
            result = await ui.run_javascript(f'shareCsv("{b64}", "{filename}")', timeout=120.0)
        except TimeoutError:
            return ShareOutcome.UNSUPPORTED
        try:
            return ShareOutcome(result)
        except ValueError:
            return ShareOutcome.UNSUPPORTED

    def download_csv(self, payload: bytes, filename: str):
        ui.download.content(payload, filename, media_type='text/csv')

    async def export(self):
        try:
            await self.manager.export_csv(self.share_csv, self.download_csv)
        except Exception as e:
            logger.error(f"Export failed: {e}", exc_info=True)
            ui.notify(f"导出失败: {e}", type='negative')

    # --- Rendering ---

    @ui.refreshable
    def render_status(self):
        mgr = self.manager
        with ui.row().classes('items-center gap-2 px-4 py-1 bg-black/40 rounded-full'):
            if mgr.is_processing:
                ui.spinner(size='xs', color='primary')
                ui.label('智能处理中').classes('text-xs text-white')
            elif mgr.active:
                ui.icon('circle', color='positive').classes('text-xs')
                ui.label('自动侦测模式').classes('text-xs text-white')
            else:
                ui.icon('pause_circle', color='grey').classes('text-xs')
                ui.label('会话已结束').classes('text-xs text-white')

    @ui.refreshable
    def render_camera_error(self):
        error = self.manager.camera_error
        if error is None:
            return
        with ui.column().classes('absolute inset-0 items-center justify-center bg-gray-900 text-white p-8 z-50'):
            ui.icon('error', color='negative').classes('text-5xl')
            ui.label(error.message).classes('text-base font-bold mb-4')
            ui.button('重启摄像头', on_click=self.restart_camera).props('color=primary')

    @ui.refreshable
    def render_controls(self):
        active = self.manager.active
        with ui.row().classes('w-full gap-4 no-wrap'):
            ui.button('停止扫描' if active else '恢复扫描',
                      icon='stop_circle' if active else 'play_circle',
                      on_click=self.toggle_scanning).classes('flex-grow py-3').props(
                          'color=dark' if active else 'color=primary')
            ui.button(icon='photo_camera', on_click=self.manual_capture).props('color=accent').bind_enabled_from(
                self.manager, 'active')
            export_btn = ui.button(icon='download', on_click=self.export).props('color=positive')
            if self.manager.history.is_empty():
                export_btn.disable()

    @ui.refreshable
    def render_history(self):
        items = self.manager.records
        if not items:
            with ui.column().classes('w-full items-center py-16 text-gray-400'):
                ui.icon('fact_check').classes('text-6xl opacity-20')
                ui.label('暂无扫描记录，请对准标签开始')
            return

        with ui.row().classes('w-full justify-between px-1'):
            ui.label(f"已扫描结果 ({len(items)})").classes('text-sm font-semibold text-gray-500')
            ui.label('最新在上').classes('text-xs text-gray-400')

        for item in items:
            border = 'border-amber-500 bg-amber-50' if item.duplicate else 'border-blue-500'
            with ui.card().classes(f'w-full p-2 border-l-4 {border}'):
                with ui.row().classes('w-full items-center justify-between'):
                    with ui.row().classes('items-center gap-2'):
                        ui.label(item.captured_at).classes('text-[10px] text-gray-400 font-mono')
                        ui.badge(f"{item.confidence * 100:.0f}%", color='grey-3', text_color='grey-8')
                        if item.duplicate:
                            ui.badge(f"重复: {', '.join(item.duplicate_fields)}", color='amber')
                    with ui.row().classes('gap-1'):
                        ui.button(icon='edit', on_click=lambda i=item: self.open_edit(i)).props('flat dense size=sm')
                        ui.button(icon='delete', color='negative',
                                  on_click=lambda rid=item.id: self.delete_record(rid)).props('flat dense size=sm')

                if item.sn:
                    with ui.row().classes('items-center gap-2'):
                        ui.label('SN').classes('text-[10px] font-bold text-gray-400 w-8')
                        ui.label(item.sn).classes('text-sm font-mono break-all')

                validation = item.validation
                for msg in validation.messages:
                    color = 'text-red-500' if msg.severity == 'error' else 'text-amber-600'
                    ui.label(msg.text).classes(f'text-[10px] pl-10 {color}')

                if item.other_codes:
                    with ui.column().classes('w-full gap-0 pt-1 border-t border-gray-100'):
                        for code in item.other_codes:
                            with ui.row().classes('items-center gap-2'):
                                ui.label(code.label).classes('text-[10px] font-bold text-gray-400 w-8 truncate')
                                ui.label(code.value).classes('text-sm font-mono text-gray-600')

    def build_dialogs(self):
        with ui.dialog() as self.edit_dialog, ui.card().classes('w-80'):
            ui.label('编辑 SN').classes('text-lg font-bold')
            self.edit_input = ui.input('SN').classes('w-full font-mono')
            with ui.row().classes('w-full justify-end gap-2'):
                ui.button('取消', on_click=self.edit_dialog.close).props('flat')
                ui.button('保存', on_click=self.save_edit).props('color=primary')

        with ui.dialog() as self.confirm_dialog, ui.card():
            ui.label('确认清空当前所有记录并开始新批次？')
            with ui.row().classes('w-full justify-end gap-2'):
                ui.button('取消', on_click=lambda: self.confirm_dialog.submit(False)).props('flat')
                ui.button('确认', on_click=lambda: self.confirm_dialog.submit(True)).props('color=negative')


def scan_page():
    page = ScanPage()
    client = ui.context.client

    client.on_disconnect(page.cleanup)

    ui.add_head_html(JS_CAMERA_CODE)
    page.build_dialogs()

    # --- HEADER ---
    with ui.header().classes('bg-white text-gray-900 items-center justify-between px-6 py-3'):
        with ui.row().classes('items-center gap-3'):
            ui.icon('photo_camera', color='primary').classes('text-2xl')
            with ui.column().classes('gap-0'):
                ui.label('标签智能扫描').classes('text-base font-black')
                ui.label(config_manager.get_ocr_config().model).classes('text-[10px] text-gray-400 uppercase')
        ui.button(icon='refresh', on_click=page.reset_batch).props('flat round color=grey')

    # --- CAMERA ---
    with ui.column().classes('w-full max-w-md mx-auto gap-0'):
        with ui.element('div').classes('relative w-full bg-black overflow-hidden rounded-b-3xl').style('aspect-ratio: 4/3'):
            ui.html('<video id="scanner-video" autoplay playsinline muted '
                    'style="width: 100%; height: 100%; object-fit: cover;"></video>', sanitize=False)
            # Guide box matches the crop region sent for recognition.
            ui.html('<div style="position: absolute; inset: 0; display: flex; align-items: center; justify-content: center; pointer-events: none;">'
                    '<div style="width: 85%; aspect-ratio: 85.6/54; border: 2px solid rgba(255,255,255,0.5); border-radius: 16px;'
                    ' box-shadow: 0 0 0 2000px rgba(0,0,0,0.5);"></div></div>', sanitize=False)
            with ui.row().classes('absolute top-4 w-full justify-center'):
                page.render_status()
            page.render_camera_error()

        with ui.column().classes('w-full p-4 pb-32'):
            page.render_history()

    # --- FOOTER ---
    with ui.footer().classes('bg-white p-4'):
        with ui.column().classes('w-full max-w-md mx-auto'):
            page.render_controls()

    ui.timer(0.5, lambda: page.start(client), once=True)
    ui.timer(0.1, page.event_consumer)
    return page
