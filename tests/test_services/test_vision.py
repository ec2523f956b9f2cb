from __future__ import annotations

import base64
import json
from types import SimpleNamespace
from typing import get_args

import httpx
import pytest

from graphix.config import Settings
from graphix.prompts.review import build_analysis_prompt
from graphix.schemas.review import ISSUE_SEVERITIES, ISSUE_TYPES, ImageAnalysis, IssueSeverity, IssueType, PanelContext
from graphix.services.vision import (
    ClaudeVisionScorer,
    FallbackVisionScorer,
    OllamaVisionScorer,
    create_vision_scorer,
    parse_analysis_response,
)
from tests.review_fixtures import FailingScorer, FakeScorer

ANALYSIS = {
    "adherenceScore": 0.82,
    "foundElements": ["red umbrella", "rain"],
    "missingElements": ["street lamp"],
    "issues": [
        {
            "type": "missing_element",
            "description": "street lamp is missing",
            "severity": "minor",
            "suggestedFix": "Add a street lamp on the left",
        }
    ],
    "qualityNotes": "Clean line art",
}


def _settings(**kwargs) -> Settings:
    values = {
        "database_url": "sqlite+aiosqlite:///:memory:",
        "anthropic_api_key": None,
        "anthropic_auth_token": None,
    }
    values.update(kwargs)
    return Settings(**values)


def _image(tmp_path, name: str = "panel.png") -> str:
    path = tmp_path / name
    path.write_bytes(b"fake-image-bytes")
    return str(path)


def _mock_httpx(monkeypatch, handler) -> None:
    real_client = httpx.AsyncClient

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", factory)


class TestParseAnalysisResponse:
    def test_camel_case_response(self):
        analysis = parse_analysis_response(json.dumps(ANALYSIS))

        assert analysis.adherence_score == pytest.approx(0.82)
        assert analysis.found_elements == ["red umbrella", "rain"]
        assert analysis.missing_elements == ["street lamp"]
        assert analysis.issues[0].type == "missing_element"
        assert analysis.issues[0].suggested_fix == "Add a street lamp on the left"
        assert analysis.quality_notes == "Clean line art"

    def test_snake_case_response(self):
        raw = json.dumps({"adherence_score": 0.4, "missing_elements": ["dog"]})
        analysis = parse_analysis_response(raw)

        assert analysis.adherence_score == pytest.approx(0.4)
        assert analysis.missing_elements == ["dog"]

    def test_unparseable_response_falls_back_to_neutral_score(self):
        analysis = parse_analysis_response("I cannot evaluate this image.")

        assert analysis.adherence_score == 0.5
        assert len(analysis.issues) == 1
        assert analysis.issues[0].type == "other"
        assert analysis.issues[0].severity == "major"
        assert analysis.issues[0].description == "Failed to parse AI analysis response"
        assert analysis.raw_response == "I cannot evaluate this image."

    @pytest.mark.parametrize(
        ("raw_score", "expected"),
        [(1.7, 1.0), (-0.2, 0.0), ("0.65", 0.65), ("high", 0.0), (None, 0.0)],
    )
    def test_score_is_clamped(self, raw_score, expected):
        analysis = parse_analysis_response(json.dumps({"adherenceScore": raw_score}))
        assert analysis.adherence_score == pytest.approx(expected)

    def test_every_declared_issue_value_is_kept(self):
        assert set(ISSUE_TYPES) == set(get_args(IssueType))
        assert set(ISSUE_SEVERITIES) == set(get_args(IssueSeverity))
        raw = json.dumps(
            {
                "adherenceScore": 0.5,
                "issues": [
                    {"type": issue_type, "description": issue_type, "severity": severity}
                    for issue_type in ISSUE_TYPES
                    for severity in ISSUE_SEVERITIES
                ],
            }
        )
        analysis = parse_analysis_response(raw)

        assert {(issue.type, issue.severity) for issue in analysis.issues} == {
            (issue_type, severity) for issue_type in ISSUE_TYPES for severity in ISSUE_SEVERITIES
        }

    def test_infinite_score_is_treated_as_invalid(self):
        analysis = parse_analysis_response('{"adherenceScore": Infinity}')
        assert analysis.adherence_score == 0.0

    def test_unknown_issue_fields_are_normalized(self):
        raw = json.dumps(
            {
                "adherenceScore": 0.5,
                "issues": [{"type": "lighting", "severity": "huge"}, "not an issue"],
            }
        )
        analysis = parse_analysis_response(raw)

        assert len(analysis.issues) == 1
        issue = analysis.issues[0]
        assert (issue.type, issue.severity, issue.description) == ("other", "major", "Unknown issue")
        assert issue.suggested_fix is None


class TestAnalysisPrompt:
    def test_without_context(self):
        prompt = build_analysis_prompt("a cat on a roof")
        assert '"a cat on a roof"' in prompt
        assert "PANEL CONTEXT" not in prompt

    def test_with_partial_context(self):
        context = PanelContext(description="night scene", character_names=["Mia", "Leo"])
        prompt = build_analysis_prompt("a cat on a roof", context)

        assert "- Description: night scene" in prompt
        assert "- Characters: Mia, Leo" in prompt
        assert "- Mood: Not specified" in prompt
        assert "- Camera Angle: Not specified" in prompt


@pytest.mark.asyncio
async def test_ollama_scorer_posts_image(monkeypatch, tmp_path):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"response": json.dumps(ANALYSIS)})

    _mock_httpx(monkeypatch, handler)
    scorer = OllamaVisionScorer(_settings(ollama_base_url="http://ollama:11434/", ollama_vision_model="llava"))

    analysis = await scorer.analyze(_image(tmp_path), "rainy street", PanelContext(mood="gloomy"))

    assert analysis.adherence_score == pytest.approx(0.82)
    assert len(requests) == 1
    assert str(requests[0].url) == "http://ollama:11434/api/generate"
    body = json.loads(requests[0].content)
    assert body["model"] == "llava"
    assert body["stream"] is False
    assert body["options"] == {"temperature": 0.3}
    assert body["images"] == [base64.b64encode(b"fake-image-bytes").decode("utf-8")]
    assert "- Mood: gloomy" in body["prompt"]


@pytest.mark.asyncio
async def test_ollama_scorer_retries_transient_status(monkeypatch, tmp_path):
    statuses = [503, 200]

    def handler(request: httpx.Request) -> httpx.Response:
        status = statuses.pop(0)
        if status != 200:
            return httpx.Response(status)
        return httpx.Response(200, json={"response": '{"adherenceScore": 0.7}'})

    _mock_httpx(monkeypatch, handler)
    scorer = OllamaVisionScorer(_settings(), max_retries=1)

    analysis = await scorer.analyze(_image(tmp_path), "prompt")

    assert analysis.adherence_score == pytest.approx(0.7)
    assert statuses == []


@pytest.mark.asyncio
async def test_ollama_scorer_does_not_retry_client_errors(monkeypatch, tmp_path):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(404, json={"error": "model not found"})

    _mock_httpx(monkeypatch, handler)
    scorer = OllamaVisionScorer(_settings(), max_retries=3)

    with pytest.raises(RuntimeError, match="Ollama vision request failed"):
        await scorer.analyze(_image(tmp_path), "prompt")
    assert len(calls) == 1


class DummyMessages:
    def __init__(self, text: str):
        self.text = text
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(content=[SimpleNamespace(type="text", text=self.text)])


def test_claude_scorer_missing_credentials():
    scorer = ClaudeVisionScorer(_settings())

    with pytest.raises(ValueError, match="Anthropic credentials missing"):
        scorer._get_client()


@pytest.mark.asyncio
async def test_claude_scorer_sends_image_block(monkeypatch, tmp_path):
    messages = DummyMessages(f"```json\n{json.dumps(ANALYSIS)}\n```")
    scorer = ClaudeVisionScorer(_settings(anthropic_api_key="key", claude_vision_model="claude-test"))
    monkeypatch.setattr(scorer, "_get_client", lambda: SimpleNamespace(messages=messages))

    analysis = await scorer.analyze(_image(tmp_path, "panel.JPG"), "rainy street")

    assert analysis.adherence_score == pytest.approx(0.82)
    call = messages.calls[0]
    assert call["model"] == "claude-test"
    assert call["max_tokens"] == 2048
    image_block, text_block = call["messages"][0]["content"]
    assert image_block["source"]["media_type"] == "image/jpeg"
    assert image_block["source"]["data"] == base64.b64encode(b"fake-image-bytes").decode("utf-8")
    assert '"rainy street"' in text_block["text"]


@pytest.mark.asyncio
async def test_claude_scorer_propagates_non_retryable_errors(monkeypatch, tmp_path):
    class BrokenMessages:
        calls = 0

        async def create(self, **kwargs):
            BrokenMessages.calls += 1
            raise ValueError("bad request")

    scorer = ClaudeVisionScorer(_settings(anthropic_api_key="key"))
    monkeypatch.setattr(scorer, "_get_client", lambda: SimpleNamespace(messages=BrokenMessages()))

    with pytest.raises(ValueError, match="bad request"):
        await scorer.analyze(_image(tmp_path), "prompt")
    assert BrokenMessages.calls == 1


@pytest.mark.asyncio
async def test_fallback_scorer_uses_backup_on_failure():
    backup = FakeScorer(0.66)
    scorer = FallbackVisionScorer(FailingScorer(), backup)

    analysis = await scorer.analyze("/static/images/x.png", "prompt")

    assert isinstance(analysis, ImageAnalysis)
    assert analysis.adherence_score == pytest.approx(0.66)
    assert len(backup.calls) == 1


@pytest.mark.asyncio
async def test_fallback_scorer_skips_backup_on_success():
    primary = FakeScorer(0.9)
    backup = FakeScorer(0.1)
    scorer = FallbackVisionScorer(primary, backup)

    analysis = await scorer.analyze("/static/images/x.png", "prompt")

    assert analysis.adherence_score == pytest.approx(0.9)
    assert backup.calls == []


class TestCreateVisionScorer:
    def test_claude_provider(self):
        assert isinstance(create_vision_scorer(_settings(vision_provider="claude")), ClaudeVisionScorer)

    def test_ollama_without_credentials(self):
        assert isinstance(create_vision_scorer(_settings(vision_provider="ollama")), OllamaVisionScorer)

    def test_ollama_with_claude_fallback(self):
        scorer = create_vision_scorer(_settings(vision_provider=" Ollama ", anthropic_api_key="key"))
        assert isinstance(scorer, FallbackVisionScorer)
        assert isinstance(scorer.primary, OllamaVisionScorer)
        assert isinstance(scorer.fallback, ClaudeVisionScorer)

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unsupported vision provider"):
            create_vision_scorer(_settings(vision_provider="gemini"))
