"""Test the handshake wire types and skip-condition evaluation."""

import pytest
from pydantic import ValidationError

from aifactory.handshake import SkipCondition, StageSummary, WorkerResponse

from support import ok_response, summary


def test_skip_condition_operators():
    data = {"metrics": {"sources_found": 3, "tags": ["ai", "chips"]}, "quality_score": 0.4}
    assert SkipCondition(field="metrics.sources_found", operator="eq", value=3).matches(data)
    assert SkipCondition(field="metrics.sources_found", operator="gt", value=2).matches(data)
    assert not SkipCondition(field="metrics.sources_found", operator="lt", value=3).matches(data)
    assert SkipCondition(field="quality_score", operator="lte", value=0.5).matches(data)
    assert SkipCondition(field="metrics.tags", operator="contains", value="ai").matches(data)
    assert SkipCondition(field="metrics.tags", operator="not_contains", value="gpu").matches(data)


def test_skip_condition_missing_field_or_bad_types_never_match():
    data = {"metrics": {"sources_found": "many"}}
    assert not SkipCondition(field="metrics.absent", operator="eq", value=None).matches(data)
    assert not SkipCondition(field="metrics.sources_found.deeper", operator="eq", value=1).matches(data)
    assert not SkipCondition(field="metrics.sources_found", operator="gt", value=1).matches(data)


def test_summary_requires_counters_and_continue_flag():
    StageSummary.model_validate(summary())
    incomplete = summary()
    del incomplete["continue_pipeline"]
    with pytest.raises(ValidationError):
        StageSummary.model_validate(incomplete)
    negative = summary()
    negative["items_processed"] = -1
    with pytest.raises(ValidationError):
        StageSummary.model_validate(negative)


def test_successful_response_needs_summary():
    WorkerResponse.model_validate(ok_response({"x": 1}))
    WorkerResponse.model_validate({"success": False, "error": "boom"})
    with pytest.raises(ValidationError):
        WorkerResponse.model_validate({"success": True, "output": {}})


def test_usage_items_are_validated():
    body = ok_response({}, usage=[{"resource_name": "openai_api", "quantity": -5}])
    with pytest.raises(ValidationError):
        WorkerResponse.model_validate(body)
