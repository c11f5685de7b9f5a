"""
Unit tests for classifier response decoding and HTTP failure mapping.
HTTP is served by httpx.MockTransport - no network required.
"""

import json

import httpx
import pytest

from kubeheal.services.detections.candidates import AnomalyCandidate, ThreatCandidate
from kubeheal.services.detections.classifier import HttpClassifier, decode_candidates, strip_fences
from kubeheal.services.shared.errors import ClassifierError, TransientError
from kubeheal.services.shared.models import Severity

GOOD_ITEM = {
    "category": "anomaly",
    "kind": "oom_killed",
    "severity": "high",
    "description": "payments-6c8d7f9b4-qz8rt was OOMKilled",
    "affected_resource": "payments/payments-6c8d7f9b4-qz8rt",
    "suggested_action": "update_deployment_resources",
    "action_params": {"memory_limit": "2Gi"},
}


def _chat_response(content) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _classifier(handler) -> HttpClassifier:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpClassifier(url="http://classifier.test/v1/chat/completions", api_key="k",
                          model="m", timeout=1.0, client=client)


# ── decode_candidates ──────────────────────────────────────────────────────────

def test_decode_valid_document():
    doc = {"summary": "one problem", "issues": [GOOD_ITEM]}
    result = decode_candidates(json.dumps(doc))
    assert result.summary == "one problem"
    assert len(result.candidates) == 1
    cand = result.candidates[0]
    assert isinstance(cand, AnomalyCandidate)
    assert cand.severity == Severity.high
    assert cand.action_params == {"memory_limit": "2Gi"}


def test_decode_discriminates_security_items():
    item = {
        "category": "security",
        "kind": "privileged_container",
        "severity": "critical",
        "description": "container runs privileged",
        "cve_ids": ["CVE-2024-21626"],
    }
    result = decode_candidates(json.dumps([item]))
    assert isinstance(result.candidates[0], ThreatCandidate)
    assert result.candidates[0].cve_ids == ["CVE-2024-21626"]


def test_decode_strips_markdown_fences():
    text = "```json\n" + json.dumps({"issues": [GOOD_ITEM]}) + "\n```"
    assert strip_fences(text).startswith("{")
    assert len(decode_candidates(text).candidates) == 1


def test_decode_malformed_json_yields_zero_candidates():
    result = decode_candidates("I could not analyze this cluster, sorry!")
    assert result.candidates == []


def test_decode_wrong_shape_yields_zero_candidates():
    assert decode_candidates(json.dumps({"issues": "none"})).candidates == []
    assert decode_candidates(json.dumps(42)).candidates == []
    assert decode_candidates("").candidates == []


@pytest.mark.parametrize("content", [42, True, 3.5, {"issues": [GOOD_ITEM]}])
def test_decode_non_text_content_yields_zero_candidates(content):
    assert decode_candidates(content).candidates == []


def test_decode_drops_bad_items_keeps_good_ones():
    """One invalid item never discards the valid ones next to it."""
    bad_severity = dict(GOOD_ITEM, severity="warning")
    missing_description = {k: v for k, v in GOOD_ITEM.items() if k != "description"}
    unknown_category = dict(GOOD_ITEM, category="cost")
    items = [bad_severity, GOOD_ITEM, missing_description, unknown_category, "not an object"]

    result = decode_candidates(json.dumps({"issues": items}))
    assert len(result.candidates) == 1
    assert result.dropped == 4


# ── HttpClassifier ─────────────────────────────────────────────────────────────

def test_http_classifier_sends_summary_and_decodes_answer():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_chat_response(json.dumps({"issues": [GOOD_ITEM]})))

    result = _classifier(handler).classify({"cpu": {"usage_percent": 93}})
    assert len(result.candidates) == 1
    assert seen["auth"] == "Bearer k"
    assert seen["body"]["model"] == "m"
    assert "usage_percent" in seen["body"]["messages"][1]["content"]


@pytest.mark.parametrize("status", [429, 500, 503])
def test_http_classifier_retryable_statuses_are_transient(status):
    handler = lambda request: httpx.Response(status, headers={"Retry-After": "12"})
    with pytest.raises(TransientError) as exc:
        _classifier(handler).classify({})
    assert exc.value.retry_after_seconds == 12


def test_http_classifier_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(TransientError):
        _classifier(handler).classify({})


def test_http_classifier_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientError):
        _classifier(handler).classify({})


def test_http_classifier_client_error_is_not_transient():
    handler = lambda request: httpx.Response(401, text="bad key")
    with pytest.raises(ClassifierError):
        _classifier(handler).classify({})


def test_http_classifier_garbage_envelope_yields_zero_candidates():
    handler = lambda request: httpx.Response(200, json={"unexpected": True})
    assert _classifier(handler).classify({}).candidates == []


@pytest.mark.parametrize("content", [42, True])
def test_http_classifier_scalar_content_yields_zero_candidates(content):
    handler = lambda request: httpx.Response(200, json=_chat_response(content))
    assert _classifier(handler).classify({}).candidates == []
