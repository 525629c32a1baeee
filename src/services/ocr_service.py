import base64
import json
import logging
import re
from typing import Optional, Dict, Any

import requests
from nicegui import run

from src.core.config import config_manager
from src.core.errors import (
    OcrError, InvalidImageError, RateLimitedError, OcrTimeoutError, ServiceError, ConfigurationError,
)
from src.core.models import OcrConfig, OtherCode, RecognitionResult

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = """你是一个高速OCR助手，专门识别物流标签上的编码。
规则：
1. 忽略所有二维码、条形码图形、扫码文字。
2. 仅提取：SN(序列号)。
3. 忽略 SKU、MAC、日期等其他信息。
4. 如果图中找不到SN，返回 null。
5. 严禁输出任何解释性文字。
6. 必须返回有效的JSON格式，包含以下字段：sn, other_codes, confidence。"""

USER_PROMPT = ('仅提取SN（序列号）。严禁提取SKU、MAC、P/N等其他编码。'
               '返回JSON：{"sn": "序列号或null", "other_codes": [], "confidence": 0.9}。')

# Labels the model sometimes returns anyway; never kept.
DISALLOWED_LABELS = ('SKU', 'MAC', 'P/N', 'MODEL')

MIN_IMAGE_BYTES = 100
DEFAULT_CONFIDENCE = 0.8


def extract_json(content: str) -> Dict[str, Any]:
    """Parses the model reply, tolerating prose or code fences around the JSON object."""
    try:
        data = json.loads(content.strip())
    except ValueError:
        match = re.search(r"\{.*\}", content, re.S)
        if not match:
            raise ServiceError("无法解析识别结果")
        try:
            data = json.loads(match.group(0))
        except ValueError:
            raise ServiceError("无法解析识别结果")
    if not isinstance(data, dict):
        raise ServiceError("无法解析识别结果")
    return data


def filter_other_codes(codes) -> list:
    kept = []
    for code in codes or []:
        if not isinstance(code, dict):
            continue
        label = str(code.get('label') or '')
        value = code.get('value')
        if value is None:
            continue
        upper = label.upper()
        if any(bad in upper for bad in DISALLOWED_LABELS):
            continue
        kept.append(OtherCode(label=label, value=str(value)))
    return kept


def parse_recognition(data: Dict[str, Any]) -> RecognitionResult:
    sn = data.get('sn')
    if isinstance(sn, str):
        sn = sn.strip()
        if not sn or sn.lower() == 'null':
            sn = None
    elif sn is not None:
        sn = str(sn)

    confidence = data.get('confidence')
    try:
        confidence = float(confidence) if confidence is not None else DEFAULT_CONFIDENCE
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE

    return RecognitionResult(
        sn=sn,
        other_codes=filter_other_codes(data.get('other_codes')),
        confidence=confidence,
    )


def classify_http_error(status_code: int, body: str) -> OcrError:
    if status_code == 400 or 'INVALID_ARGUMENT' in body:
        return InvalidImageError()
    if status_code == 429 or 'rate limit' in body.lower():
        return RateLimitedError()
    return ServiceError()


class LabelRecognizer:
    """Client for an OpenAI-compatible multimodal chat-completions endpoint."""

    def __init__(self, config: Optional[OcrConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or config_manager.get_ocr_config()
        self.session = session or requests.Session()

    def _build_payload(self, image_bytes: bytes) -> Dict[str, Any]:
        image_url = "data:image/jpeg;base64," + base64.b64encode(image_bytes).decode('ascii')
        return {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": SYSTEM_INSTRUCTION},
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": image_url}},
                        {"type": "text", "text": USER_PROMPT},
                    ],
                },
            ],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }

    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        url = f"{self.config.api_base}/chat/completions"
        headers = {"Authorization": f"Bearer {self.config.api_key}", "Content-Type": "application/json"}
        return self.session.post(url, headers=headers, json=payload, timeout=self.config.timeout)

    def recognize_sync(self, image_bytes: bytes) -> RecognitionResult:
        if not image_bytes or len(image_bytes) < MIN_IMAGE_BYTES:
            raise InvalidImageError("图像无效")
        if not self.config.api_key:
            raise ConfigurationError()

        try:
            response = self._post(self._build_payload(image_bytes))
        except requests.Timeout:
            raise OcrTimeoutError()
        except requests.RequestException as e:
            logger.error(f"OCR request failed: {e}")
            raise ServiceError()

        if response.status_code >= 400:
            logger.error(f"OCR API Error: {response.status_code} {response.text[:200]}")
            raise classify_http_error(response.status_code, response.text or "")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise ServiceError("无法解析识别结果")
        if not content:
            raise ServiceError("识别无结果")

        result = parse_recognition(extract_json(content))
        logger.info(f"Recognized SN={result.sn!r}, {len(result.other_codes)} other codes, conf={result.confidence:.2f}")
        return result

    async def recognize(self, image_bytes: bytes) -> RecognitionResult:
        # requests is blocking; keep it off the event loop
        return await run.io_bound(self.recognize_sync, image_bytes)

    def close(self):
        self.session.close()
