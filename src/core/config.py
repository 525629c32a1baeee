import os
import json
import logging
from typing import Dict, Any, Optional

from src.core.errors import ConfigError
from src.core.models import StabilityConfig, CaptureConfig, OcrConfig

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = os.path.join(os.getcwd(), "settings.json")


class ConfigManager:
    """
    Settings resolved in order: environment variable, settings.json, default.
    The JSON file is optional; a file that exists but can't be parsed is a ConfigError.
    """

    def __init__(self, settings_path: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        self.settings_path = settings_path or os.environ.get("SETTINGS_PATH", DEFAULT_SETTINGS_PATH)
        self._env = env if env is not None else os.environ
        self._settings: Optional[Dict[str, Any]] = None

    def load_config(self) -> Dict[str, Any]:
        if self._settings is not None:
            return self._settings

        if not os.path.exists(self.settings_path):
            self._settings = {}
            return self._settings

        try:
            with open(self.settings_path, 'r', encoding='utf-8') as f:
                data = json.load(f) or {}
        except (OSError, ValueError) as e:
            raise ConfigError(f"无法读取配置文件 {self.settings_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"配置文件格式错误: {self.settings_path}")

        logger.info(f"Loaded settings from {self.settings_path}")
        self._settings = data
        return self._settings

    def reload(self) -> Dict[str, Any]:
        self._settings = None
        return self.load_config()

    def get(self, name: str, default: Any, cast=str) -> Any:
        if name in self._env:
            v = self._env[name]
        else:
            v = self.load_config().get(name, default)

        if v is None:
            return default
        if cast is bool:
            if isinstance(v, bool):
                return v
            return str(v).lower() in ("1", "true", "on", "yes")
        try:
            return cast(v)
        except (TypeError, ValueError):
            logger.warning(f"Invalid value for {name}: {v!r}, using default {default!r}")
            return default

    def _first(self, names, default: Optional[str]) -> Optional[str]:
        for name in names:
            v = self.get(name, None)
            if v:
                return v
        return default

    def get_stability_config(self) -> StabilityConfig:
        return StabilityConfig(
            threshold=self.get("STABILITY_THRESHOLD", 0.035, float),
            min_stable_ms=self.get("MIN_STABLE_MS", 600, int),
            cooldown_ms=self.get("CAPTURE_COOLDOWN_MS", 1500, int),
            sample_stride=self.get("SAMPLE_STRIDE", 12, int),
            poll_interval=self.get("POLL_INTERVAL_S", 0.05, float),
        )

    def get_capture_config(self) -> CaptureConfig:
        return CaptureConfig(
            width_ratio=self.get("CROP_WIDTH_RATIO", 0.85, float),
            aspect_ratio=self.get("LABEL_ASPECT", 85.6 / 54, float),
            jpeg_quality=self.get("JPEG_QUALITY", 80, int),
            min_payload_bytes=self.get("MIN_PAYLOAD_BYTES", 100, int),
        )

    def get_ocr_config(self) -> OcrConfig:
        return OcrConfig(
            api_key=self._first(("ARK_API_KEY", "API_KEY"), None),
            api_base=self.get("ARK_API_BASE", "https://ark.cn-beijing.volces.com/api/v3").rstrip("/"),
            model=self.get("ARK_MODEL", "Doubao-Seed-1.6-flash"),
            timeout=self.get("OCR_TIMEOUT_S", 20.0, float),
        )

    def get_frame_source(self) -> str:
        source = self.get("FRAME_SOURCE", "browser").lower()
        if source not in ("browser", "device"):
            logger.warning(f"Unknown FRAME_SOURCE '{source}', falling back to browser")
            return "browser"
        return source

    def get_camera_index(self) -> int:
        return self.get("CAMERA_INDEX", 0, int)

    def get_log_level(self) -> str:
        return self.get("LOG_LEVEL", "INFO").upper()

    def get_port(self) -> int:
        return self.get("PORT", 8080, int)


config_manager = ConfigManager()
