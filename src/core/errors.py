class ScannerError(Exception):
    """Base error. `message` is safe to show to the user."""

    default_message = "扫描出错"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ConfigError(ScannerError):
    default_message = "配置文件无效"


# --- Camera / frame source ---

class CameraError(ScannerError):
    default_message = "无法启动摄像头"


class CameraPermissionError(CameraError):
    default_message = "摄像头权限被拒绝"


class CameraUnavailableError(CameraError):
    default_message = "无法启动摄像头"


# --- OCR collaborator ---

class OcrError(ScannerError):
    default_message = "识别服务繁忙，请稍后再试"


class InvalidImageError(OcrError):
    default_message = "图像无法解析，请确保光线充足且已对焦"


class RateLimitedError(OcrError):
    default_message = "请求过于频繁，请稍后再试"


class OcrTimeoutError(OcrError):
    default_message = "识别超时，请检查网络"


class ServiceError(OcrError):
    default_message = "识别服务繁忙，请稍后再试"


class ConfigurationError(OcrError):
    default_message = "未配置 ARK_API_KEY 环境变量"
