import json

import pytest
import requests

from faceattend.exceptions import AdvisorError
from faceattend.quality import GeminiQualityAdvisor, build_advisor, encode_jpeg
from tests.fakes import frame


def _reply(verdict_text, status=200):
    resp = requests.Response()
    resp.status_code = status
    resp.reason = "OK" if status < 400 else "Error"
    resp.url = "https://advisor.local"
    resp.encoding = "utf-8"
    body = {"candidates": [{"content": {"parts": [{"text": verdict_text}]}}]}
    resp._content = json.dumps(body).encode("utf-8")
    return resp


class StubSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, params=None, json=None, timeout=None):
        self.posts.append((url, params, json, timeout))
        if self.error is not None:
            raise self.error
        return self.response


def _advisor(session):
    return GeminiQualityAdvisor(
        api_key=" key-123 ",
        model="vision-model",
        base_url="https://advisor.local/v1/",
        timeout=4.0,
        session=session,
    )


def test_accepted_verdict_and_request_shape():
    session = StubSession(_reply('{"accepted": true, "reason": "clear face"}'))
    verdict = _advisor(session).check(frame(100))

    assert verdict.accepted is True
    assert verdict.reason == "clear face"
    url, params, payload, timeout = session.posts[0]
    assert url == "https://advisor.local/v1/models/vision-model:generateContent"
    assert params == {"key": "key-123"}
    assert timeout == 4.0
    inline = payload["contents"][0]["parts"][1]["inline_data"]
    assert inline["mime_type"] == "image/jpeg"
    assert inline["data"]


def test_fenced_reply_with_success_key_is_understood():
    session = StubSession(_reply('```json\n{"success": false, "reason": "two faces"}\n```'))
    verdict = _advisor(session).check(frame(100))
    assert verdict.accepted is False
    assert verdict.reason == "two faces"


@pytest.mark.parametrize("text", ["not json", '{"reason": "no verdict"}', '["accepted"]', '{"accepted": "yes"}'])
def test_unusable_replies_raise(text):
    with pytest.raises(AdvisorError):
        _advisor(StubSession(_reply(text))).check(frame(100))


def test_transport_and_http_errors_raise():
    with pytest.raises(AdvisorError):
        _advisor(StubSession(error=requests.Timeout("slow"))).check(frame(100))
    with pytest.raises(AdvisorError):
        _advisor(StubSession(_reply("{}", status=503))).check(frame(100))


def test_build_advisor_requires_key():
    assert build_advisor("") is None
    assert build_advisor("   ") is None
    assert isinstance(build_advisor("abc"), GeminiQualityAdvisor)
    with pytest.raises(AdvisorError):
        GeminiQualityAdvisor(api_key=" ")


def test_encode_jpeg_produces_jpeg_bytes():
    assert encode_jpeg(frame(50))[:2] == b"\xff\xd8"
