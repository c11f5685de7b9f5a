"""
Classification capability.

The classifier is opaque: it receives the telemetry summary and answers with
issue candidates. HttpClassifier talks to an OpenAI-compatible
chat-completions endpoint; any object with a matching classify() can be
injected instead (tests use fakes).

Failure mapping:
  timeout / connection error / HTTP 429 / HTTP 5xx  → TransientError (retry later)
  other HTTP 4xx                                   → ClassifierError
  body that does not decode                        → zero candidates
"""

import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx
import structlog
from pydantic import ValidationError

from kubeheal.services.shared.errors import ClassifierError, TransientError
from kubeheal.services.detections.candidates import candidate_adapter

logger = structlog.get_logger()

CLASSIFIER_URL             = os.getenv("CLASSIFIER_URL", "http://classifier:8080/v1/chat/completions")
CLASSIFIER_API_KEY         = os.getenv("CLASSIFIER_API_KEY", "")
CLASSIFIER_MODEL           = os.getenv("CLASSIFIER_MODEL", "gpt-4o-mini")
CLASSIFIER_TIMEOUT_SECONDS = float(os.getenv("CLASSIFIER_TIMEOUT_SECONDS", "60"))

_FENCE = re.compile(r"```(?:json)?\s*|```", re.IGNORECASE)

SYSTEM_PROMPT = """You are a Kubernetes incident analyst. You receive a summary of recent
cluster telemetry: scalar metrics, problematic pods, warning events and security findings.

Report every distinct problem as one item. Prioritise Kubernetes events (CrashLoopBackOff,
ImagePullBackOff, FailedScheduling, OOMKilled, Evicted, Unhealthy, FailedMount) over raw metrics.

Return JSON only, no markdown:
{
  "summary": "one paragraph describing the overall cluster state",
  "issues": [
    {
      "category": "anomaly" | "security",
      "kind": "pod_restart|crash_loop_backoff|pod_crash|pod_pending|image_pull_error|oom_killed|probe_failure|scheduling_issue|mount_failure|high_cpu|high_memory|resource_limit_too_low|privileged_container|exposed_secret|...",
      "severity": "low|medium|high|critical",
      "description": "what is wrong, naming the pod and namespace",
      "recommendation": "the concrete fix",
      "evidence": ["exact event messages or metric values"],
      "affected_resource": "namespace/name",
      "suggested_action": "restart_pod|delete_pod|scale_deployment|update_deployment_image|update_deployment_resources|null",
      "action_params": {"pod_name": "", "namespace": "", "deployment_name": "", "container_name": "",
                        "replicas": 2, "new_image": "", "memory_limit": "", "memory_request": "",
                        "cpu_limit": "", "cpu_request": ""}
    }
  ]
}"""


@dataclass
class ClassificationResult:
    candidates: list = field(default_factory=list)
    summary:    str = ""
    dropped:    int = 0


class Classifier(Protocol):
    def classify(self, cluster_summary: dict[str, Any]) -> ClassificationResult:
        ...


def strip_fences(text: str) -> str:
    return _FENCE.sub("", text).strip()


def decode_candidates(text: Any) -> ClassificationResult:
    """
    Strictly decode a classifier answer.
    Accepts {"issues": [...], "summary": "..."} or a bare list of items.
    Malformed documents yield no candidates; malformed items are dropped one by one.
    """
    if not text:
        return ClassificationResult()
    if not isinstance(text, str):
        logger.warning("classifier_response_not_text", type=type(text).__name__)
        return ClassificationResult()

    try:
        doc = json.loads(strip_fences(text))
    except json.JSONDecodeError as exc:
        logger.warning("classifier_response_unparseable", error=str(exc), length=len(text))
        return ClassificationResult()

    if isinstance(doc, list):
        items, summary = doc, ""
    elif isinstance(doc, dict) and isinstance(doc.get("issues", []), list):
        items = doc.get("issues", [])
        summary = doc.get("summary") if isinstance(doc.get("summary"), str) else ""
    else:
        logger.warning("classifier_response_wrong_shape", type=type(doc).__name__)
        return ClassificationResult()

    result = ClassificationResult(summary=summary)
    for index, item in enumerate(items):
        try:
            result.candidates.append(candidate_adapter.validate_python(item))
        except ValidationError as exc:
            result.dropped += 1
            logger.warning("classifier_item_dropped", index=index, errors=exc.error_count())
    return result


class HttpClassifier:
    def __init__(
        self,
        url: str = CLASSIFIER_URL,
        api_key: str = CLASSIFIER_API_KEY,
        model: str = CLASSIFIER_MODEL,
        timeout: float = CLASSIFIER_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = client

    def _post(self, body: dict) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self._client is not None:
            return self._client.post(self.url, json=body, headers=headers, timeout=self.timeout)
        return httpx.post(self.url, json=body, headers=headers, timeout=self.timeout)

    def classify(self, cluster_summary: dict[str, Any]) -> ClassificationResult:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": "Analyze this cluster telemetry summary:\n\n"
                               + json.dumps(cluster_summary, indent=2, default=str),
                },
            ],
        }

        try:
            resp = self._post(body)
        except httpx.TimeoutException as exc:
            raise TransientError(f"classifier timed out: {exc}")
        except httpx.TransportError as exc:
            raise TransientError(f"classifier unreachable: {exc}")

        if resp.status_code == 429 or resp.status_code >= 500:
            retry_after = resp.headers.get("Retry-After", "")
            raise TransientError(
                f"classifier returned HTTP {resp.status_code}",
                retry_after_seconds=int(retry_after) if retry_after.isdigit() else 30,
            )
        if resp.status_code >= 400:
            raise ClassifierError(f"classifier returned HTTP {resp.status_code}: {resp.text[:200]}")

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            logger.warning("classifier_envelope_unparseable", status=resp.status_code)
            return ClassificationResult()

        result = decode_candidates(content)
        logger.info(
            "classifier_answered",
            candidates=len(result.candidates),
            dropped=result.dropped,
        )
        return result
