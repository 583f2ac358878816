import asyncio
import json

import pytest
import requests

from src.chatlink.domain.models import TransactionCandidate
from src.chatlink.errors import ExtractionError
from src.chatlink.services import extraction_ai
from src.chatlink.services.extraction_ai import (
    KIND_IMAGE,
    KIND_TEXT,
    KIND_VOICE,
    ExtractionRequest,
    OpenAIExtractionDelegate,
    apply_floor,
    parse_candidates,
)


class _Resp:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text or json.dumps(self._payload)

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, headers=None, timeout=None, **kwargs):
        self.calls.append((url, headers, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _chat_reply(content):
    return _Resp(payload={"choices": [{"message": {"content": content}}]})


def test_parse_candidates_accepts_list_object_and_fenced_json():
    wrapped = parse_candidates('{"transactions": [{"amount": 50000, "category": "Food & Dining"}]}')
    single = parse_candidates('{"amount": 12.5, "type": "income", "description": "Refund"}')
    fenced = parse_candidates('```json\n[{"amount": 1000}, {"amount": 2000}]\n```')
    assert [c.amount for c in wrapped] == [50000]
    assert single[0].type == "income"
    assert [c.amount for c in fenced] == [1000, 2000]


def test_parse_candidates_drops_invalid_and_non_positive_items():
    raw = json.dumps(
        {
            "transactions": [
                {"amount": 0},
                {"amount": -5},
                {"amount": "abc"},
                {"description": "no amount"},
                {"amount": 10, "type": "transfer"},
                "junk",
                {"amount": 99, "date": None},
            ]
        }
    )
    assert [c.amount for c in parse_candidates(raw)] == [99]


def test_parse_candidates_rejects_unparseable_reply():
    with pytest.raises(ExtractionError):
        parse_candidates("sorry, I cannot help")


def test_confidence_floor_depends_on_modality():
    cands = [TransactionCandidate(amount=1, confidence=0.65), TransactionCandidate(amount=2, confidence=0.9)]
    assert [c.amount for c in apply_floor(cands, KIND_TEXT)] == [2]
    assert [c.amount for c in apply_floor(cands, KIND_VOICE)] == [1, 2]
    assert [c.amount for c in apply_floor(cands, KIND_IMAGE)] == [1, 2]


def test_text_extraction_calls_chat_completions():
    session = FakeSession(_chat_reply('{"transactions": [{"amount": 50000, "category": "Food & Dining", "confidence": 0.9}]}'))
    delegate = OpenAIExtractionDelegate(api_key="sk-test", base_url="https://ai.local/v1/", session=session)
    request = ExtractionRequest(kind=KIND_TEXT, text="Lunch 50000", categories=["Food & Dining", "Other"], currency="IDR")

    result = asyncio.run(delegate.extract(request))

    assert result is not None
    assert result.source_text == "Lunch 50000"
    assert [c.amount for c in result.candidates] == [50000]
    [(url, headers, kwargs)] = session.calls
    assert url == "https://ai.local/v1/chat/completions"
    assert headers["Authorization"] == "Bearer sk-test"
    body = kwargs["json"]
    assert body["response_format"] == {"type": "json_object"}
    assert "Food & Dining, Other" in body["messages"][0]["content"]
    assert "IDR" in body["messages"][0]["content"]
    assert body["messages"][1]["content"] == "Lunch 50000"


def test_low_confidence_text_yields_none():
    session = FakeSession(_chat_reply('{"transactions": [{"amount": 50000, "confidence": 0.4}]}'))
    delegate = OpenAIExtractionDelegate(api_key="sk-test", session=session)
    assert asyncio.run(delegate.extract(ExtractionRequest(kind=KIND_TEXT, text="maybe 50000"))) is None


def test_voice_is_transcribed_before_extraction():
    session = FakeSession(
        _Resp(payload={"text": "bensin lima puluh ribu"}),
        _chat_reply('{"transactions": [{"amount": 50000, "category": "Transportation", "confidence": 0.8}]}'),
    )
    delegate = OpenAIExtractionDelegate(api_key="sk-test", base_url="https://ai.local/v1", session=session)
    request = ExtractionRequest(kind=KIND_VOICE, media=b"OggS", mimetype="audio/ogg; codecs=opus")

    result = asyncio.run(delegate.extract(request))

    assert result.source_text == "bensin lima puluh ribu"
    transcribe_url, _, transcribe_kwargs = session.calls[0]
    assert transcribe_url.endswith("/audio/transcriptions")
    assert transcribe_kwargs["files"]["file"][0] == "voice.ogg"
    assert session.calls[1][2]["json"]["messages"][1]["content"] == "bensin lima puluh ribu"


def test_image_is_sent_as_data_uri():
    session = FakeSession(_chat_reply('{"amount": 125000, "confidence": 0.95}'))
    delegate = OpenAIExtractionDelegate(api_key="sk-test", session=session)
    request = ExtractionRequest(kind=KIND_IMAGE, media=b"\xff\xd8", mimetype="image/jpeg")

    result = asyncio.run(delegate.extract(request))

    assert result.candidates[0].amount == 125000
    content = session.calls[0][2]["json"]["messages"][1]["content"]
    assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")


def test_missing_api_key_raises(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    delegate = OpenAIExtractionDelegate(session=FakeSession())
    with pytest.raises(ExtractionError):
        asyncio.run(delegate.extract(ExtractionRequest(kind=KIND_TEXT, text="Lunch 50000")))


def test_provider_errors_open_the_breaker():
    session = FakeSession(
        _Resp(status_code=500, text="boom"),
        requests.ConnectionError("refused"),
        _Resp(status_code=503, text="busy"),
    )
    delegate = OpenAIExtractionDelegate(api_key="sk-test", session=session)
    request = ExtractionRequest(kind=KIND_TEXT, text="Lunch 50000")

    for _ in range(3):
        with pytest.raises(ExtractionError):
            asyncio.run(delegate.extract(request))
    with pytest.raises(ExtractionError, match="circuit open"):
        asyncio.run(delegate.extract(request))
    assert len(session.calls) == 3

    extraction_ai.reset_breaker()
    session.responses.append(_chat_reply('{"amount": 1, "confidence": 1}'))
    assert asyncio.run(delegate.extract(request)) is not None


def test_empty_text_skips_provider():
    session = FakeSession()
    delegate = OpenAIExtractionDelegate(api_key="sk-test", session=session)
    assert asyncio.run(delegate.extract(ExtractionRequest(kind=KIND_TEXT, text="   "))) is None
    assert session.calls == []
