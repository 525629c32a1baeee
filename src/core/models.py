from typing import List, Optional, Dict, Any

from pydantic import BaseModel, field_validator

from src.core.sn_validation import ValidationResult, validate_sn


class OtherCode(BaseModel):
    label: str
    value: str


class RecognitionResult(BaseModel):
    """What the OCR service returns for a single label image."""
    sn: Optional[str] = None
    other_codes: List[OtherCode] = []
    confidence: float = 0.8

    @field_validator('confidence')
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        return min(max(float(v), 0.0), 1.0)

    @property
    def has_content(self) -> bool:
        return bool(self.sn) or len(self.other_codes) > 0


class ScanResult(BaseModel):
    """One row of the session history."""
    id: str
    captured_at: str  # local display time, HH:MM:SS
    sn: Optional[str] = None
    other_codes: List[OtherCode] = []
    confidence: float = 0.0
    duplicate: bool = False
    duplicate_fields: List[str] = []

    @property
    def validation(self) -> ValidationResult:
        # Derived from the current SN, so it follows edits.
        return validate_sn(self.sn)


class Notice(BaseModel):
    message: str
    level: str = "info"  # info, warning, error


class ScanEvent(BaseModel):
    type: str  # 'status_update', 'scan_started', 'scan_finished', 'history_changed', 'notice', 'camera_error'
    data: Dict[str, Any] = {}


# --- Configuration models ---

class StabilityConfig(BaseModel):
    threshold: float = 0.035
    min_stable_ms: int = 600
    cooldown_ms: int = 1500
    sample_width: int = 160
    sample_height: int = 120
    sample_stride: int = 12  # compare every Nth byte of the sample
    poll_interval: float = 0.05


class CaptureConfig(BaseModel):
    width_ratio: float = 0.85
    aspect_ratio: float = 85.6 / 54  # ID-1 card
    jpeg_quality: int = 80
    min_payload_bytes: int = 100


class OcrConfig(BaseModel):
    api_key: Optional[str] = None
    api_base: str = "https://ark.cn-beijing.volces.com/api/v3"
    model: str = "Doubao-Seed-1.6-flash"
    timeout: float = 20.0
    temperature: float = 0.1
    max_tokens: int = 2000
