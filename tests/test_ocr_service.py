import pytest
import requests
from unittest.mock import AsyncMock, MagicMock, patch

from src.core.errors import (
    ConfigurationError, InvalidImageError, OcrTimeoutError, RateLimitedError, ServiceError
)
from src.core.models import OcrConfig
from src.services.ocr_service import (
    LabelRecognizer, classify_http_error, extract_json, filter_other_codes, parse_recognition
)

IMAGE = b"\xff\xd8" + b"\x00" * 200


def make_response(status_code=200, content=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def recognizer(session):
    config = OcrConfig(api_key="test-key", api_base="https://ocr.example.com/api/v3", model="test-model")
    return LabelRecognizer(config=config, session=session)


def test_extract_json_plain_and_fenced():
    assert extract_json('{"sn": "X"}') == {"sn": "X"}
    assert extract_json('```json\n{"sn": "X", "confidence": 0.9}\n```') == {"sn": "X", "confidence": 0.9}
    assert extract_json('Result: {"sn": null} done') == {"sn": None}


def test_extract_json_garbage():
    with pytest.raises(ServiceError):
        extract_json("no json here")
    with pytest.raises(ServiceError):
        extract_json("[1, 2]")


def test_filter_other_codes_drops_disallowed_labels():
    codes = filter_other_codes([
        {"label": "SKU", "value": "1"},
        {"label": "mac address", "value": "2"},
        {"label": "P/N", "value": "3"},
        {"label": "Model", "value": "4"},
        {"label": "Batch", "value": "B7"},
        {"label": "Lot", "value": None},
        "junk",
    ])
    assert [(c.label, c.value) for c in codes] == [("Batch", "B7")]


def test_parse_recognition_defaults():
    result = parse_recognition({"sn": "null"})
    assert result.sn is None
    assert result.other_codes == []
    assert result.confidence == 0.8

    result = parse_recognition({"sn": " 952985A1B123456789AX ", "confidence": "high"})
    assert result.sn == "952985A1B123456789AX"
    assert result.confidence == 0.8

    assert parse_recognition({"sn": "X", "confidence": 3}).confidence == 1.0


def test_classify_http_error():
    assert isinstance(classify_http_error(400, ""), InvalidImageError)
    assert isinstance(classify_http_error(500, '{"code": "INVALID_ARGUMENT"}'), InvalidImageError)
    assert isinstance(classify_http_error(429, ""), RateLimitedError)
    assert isinstance(classify_http_error(503, "Rate Limit exceeded"), RateLimitedError)
    assert isinstance(classify_http_error(502, "bad gateway"), ServiceError)


def test_recognize_success(recognizer, session):
    session.post.return_value = make_response(
        content='{"sn": "952985A1B123456789AX", "other_codes": [{"label": "SKU", "value": "S1"}], "confidence": 0.95}'
    )

    result = recognizer.recognize_sync(IMAGE)

    assert result.sn == "952985A1B123456789AX"
    assert result.other_codes == []
    assert result.confidence == 0.95

    args, kwargs = session.post.call_args
    assert args[0] == "https://ocr.example.com/api/v3/chat/completions"
    assert kwargs["headers"]["Authorization"] == "Bearer test-key"
    payload = kwargs["json"]
    assert payload["model"] == "test-model"
    image_part = payload["messages"][1]["content"][0]
    assert image_part["image_url"]["url"].startswith("data:image/jpeg;base64,")


def test_recognize_rejects_tiny_image(recognizer, session):
    with pytest.raises(InvalidImageError):
        recognizer.recognize_sync(b"\xff\xd8")
    session.post.assert_not_called()


def test_recognize_without_api_key(session):
    recognizer = LabelRecognizer(config=OcrConfig(api_key=None), session=session)
    with pytest.raises(ConfigurationError):
        recognizer.recognize_sync(IMAGE)
    session.post.assert_not_called()


@pytest.mark.parametrize("status, body, expected", [
    (400, "", InvalidImageError),
    (429, "", RateLimitedError),
    (500, "internal", ServiceError),
])
def test_recognize_http_errors(recognizer, session, status, body, expected):
    session.post.return_value = make_response(status_code=status, text=body)
    with pytest.raises(expected):
        recognizer.recognize_sync(IMAGE)


def test_recognize_timeout(recognizer, session):
    session.post.side_effect = requests.Timeout()
    with pytest.raises(OcrTimeoutError):
        recognizer.recognize_sync(IMAGE)


def test_recognize_connection_error(recognizer, session):
    session.post.side_effect = requests.ConnectionError("down")
    with pytest.raises(ServiceError):
        recognizer.recognize_sync(IMAGE)


def test_recognize_empty_content(recognizer, session):
    session.post.return_value = make_response(content="")
    with pytest.raises(ServiceError, match="识别无结果"):
        recognizer.recognize_sync(IMAGE)


def test_recognize_malformed_response(recognizer, session):
    response = make_response()
    response.json.return_value = {"unexpected": True}
    session.post.return_value = response
    with pytest.raises(ServiceError):
        recognizer.recognize_sync(IMAGE)


@pytest.mark.asyncio
async def test_recognize_runs_in_io_bound(recognizer):
    expected = parse_recognition({"sn": "X"})
    with patch('src.services.ocr_service.run.io_bound', new_callable=AsyncMock) as mock_io_bound:
        mock_io_bound.return_value = expected
        result = await recognizer.recognize(IMAGE)

    assert result is expected
    mock_io_bound.assert_awaited_once_with(recognizer.recognize_sync, IMAGE)
