"""
Outbound delivery of approval requests to a messaging webhook.

The webhook is optional. Delivery failures are logged and swallowed here:
the approval stays answerable from the web channel either way.
"""

import os
from typing import Optional

import httpx
import structlog

from kubeheal.services.shared.models import ApprovalRequest, Issue
from kubeheal.services.shared.timeutil import as_utc

logger = structlog.get_logger()

APPROVAL_WEBHOOK_URL     = os.getenv("APPROVAL_WEBHOOK_URL", "")
APPROVAL_WEBHOOK_TIMEOUT = float(os.getenv("APPROVAL_WEBHOOK_TIMEOUT_SECONDS", "5"))


class ApprovalNotifier:
    def __init__(self, url: str = APPROVAL_WEBHOOK_URL, timeout: float = APPROVAL_WEBHOOK_TIMEOUT,
                 client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def send(self, approval: ApprovalRequest, issue: Issue) -> Optional[str]:
        """Deliver the request. Returns the receiver's message reference, if any."""
        if not self.enabled:
            return None

        body = {
            "approval_id": approval.id,
            "cluster_id":  approval.cluster_id,
            "issue": {
                "id":                issue.id,
                "kind":              issue.kind,
                "severity":          issue.severity.value,
                "description":       issue.description,
                "affected_resource": issue.affected_resource,
            },
            "action_type":   approval.action_type.value,
            "action_params": approval.action_params,
            "expires_at":    as_utc(approval.expires_at).isoformat(),
            "decisions":     ["approve", "reject"],
        }
        try:
            post = self._client.post if self._client is not None else httpx.post
            resp = post(self.url, json=body, timeout=self.timeout)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("approval_webhook_failed", approval_id=approval.id, error=str(exc))
            return None

        ref = None
        try:
            data = resp.json()
            if isinstance(data, dict) and data.get("id") is not None:
                ref = str(data["id"])
        except ValueError:
            pass
        logger.info("approval_webhook_delivered", approval_id=approval.id, ref=ref)
        return ref
