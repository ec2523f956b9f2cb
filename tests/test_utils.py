from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from graphix.models.project import Project
from graphix.models.review import ImageReview
from graphix.utils import _fix_common_json_errors, _try_fix_incomplete_json, extract_json, utcnow


class TestExtractJson:
    def test_valid_json(self):
        assert extract_json('{"adherenceScore": 0.8}') == {"adherenceScore": 0.8}

    def test_json_with_markdown_fence(self):
        text = '```json\n{"adherenceScore": 0.8, "issues": []}\n```'
        assert extract_json(text) == {"adherenceScore": 0.8, "issues": []}

    def test_fence_in_middle_of_response(self):
        text = 'Here is my analysis:\n```json\n{"adherenceScore": 0.6}\n```\nLet me know if you need more.'
        assert extract_json(text) == {"adherenceScore": 0.6}

    def test_unterminated_fence(self):
        text = '```json\n{"adherenceScore": 0.6}'
        assert extract_json(text) == {"adherenceScore": 0.6}

    def test_json_with_surrounding_text(self):
        text = 'Result:\n{"adherenceScore": 0.9}\nDone.'
        assert extract_json(text) == {"adherenceScore": 0.9}

    def test_truncated_response_is_closed(self):
        text = '{"adherenceScore": 0.8, "issues": [{"type": "quality"'
        result = extract_json(text)
        assert result["adherenceScore"] == 0.8
        assert result["issues"] == [{"type": "quality"}]

    def test_trailing_commas(self):
        text = '{"foundElements": ["cat", "moon",], "adherenceScore": 0.7,}'
        assert extract_json(text) == {"foundElements": ["cat", "moon"], "adherenceScore": 0.7}

    def test_unicode(self):
        assert extract_json('{"qualityNotes": "画面清晰"}') == {"qualityNotes": "画面清晰"}

    def test_no_json_raises(self):
        with pytest.raises(ValueError, match="No JSON object found"):
            extract_json("The image looks great, no issues.")

    def test_array_raises(self):
        with pytest.raises(ValueError, match="No JSON object found"):
            extract_json("[1, 2, 3]")


class TestTryFixIncompleteJson:
    def test_missing_closing_brace(self):
        assert _try_fix_incomplete_json('{"mood": "calm"') == '{"mood": "calm"}'

    def test_unclosed_string(self):
        assert _try_fix_incomplete_json('{"qualityNotes": "slightly blu') == '{"qualityNotes": "slightly blu"}'

    def test_nested_brackets_close_in_order(self):
        assert _try_fix_incomplete_json('{"issues": [{"type": "other"') == '{"issues": [{"type": "other"}]}'

    def test_trailing_comma_removed(self):
        assert _try_fix_incomplete_json('{"a": 1,') == '{"a": 1}'

    def test_brackets_inside_strings_are_ignored(self):
        assert _try_fix_incomplete_json('{"description": "a [bracket"') == '{"description": "a [bracket"}'


def test_fix_common_json_errors_strips_comments():
    text = '{\n  "adherenceScore": 0.7 // model comment\n}'
    assert extract_json(_fix_common_json_errors(text)) == {"adherenceScore": 0.7}


def test_utcnow_is_naive_utc():
    now = utcnow()
    assert now.tzinfo is None
    assert abs(now - datetime.now(UTC).replace(tzinfo=None)) < timedelta(seconds=5)


def test_model_timestamps_use_naive_utc():
    project = Project(title="Timestamps")
    review = ImageReview(
        generated_image_id=1, panel_id=1, score=0.5, status="needs_work", iteration=1, reviewed_by="ai"
    )

    assert project.created_at.tzinfo is None
    assert review.created_at.tzinfo is None
    assert abs(review.created_at - utcnow()) < timedelta(seconds=5)
