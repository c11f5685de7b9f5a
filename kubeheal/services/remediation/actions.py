"""
Map an issue to the remediation command the agent should run.

The target pod comes from the classifier's action_params, else from
affected_resource ("namespace/pod"). Deployment names are derived from pod
names by stripping the replica-set hash and pod suffix.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Optional

from kubeheal.services.shared.models import CommandType, Issue

_POD_SUFFIX = re.compile(r"-[a-z0-9]+-[a-z0-9]+$")

RESTART_KINDS  = {"pod_restart", "pod_restart_loop", "crash_loop_backoff", "pod_crash", "probe_failure"}
SCALE_KINDS    = {"high_cpu", "high_memory", "high_resource_usage", "resource_exhaustion"}
RESOURCE_KINDS = {"oom_killed", "resource_limit_too_low"}

DEFAULT_REPLICAS = 2
DEFAULT_RESOURCES = {
    "memory_limit":   "1Gi",
    "memory_request": "512Mi",
    "cpu_limit":      "1000m",
    "cpu_request":    "500m",
}

# Classifier vocabulary that predates scale_deployment.
_ACTION_ALIASES = {"scale_up": CommandType.scale_deployment}


@dataclass(frozen=True)
class PlannedAction:
    command_type: CommandType
    params:       dict[str, Any] = field(default_factory=dict)


def deployment_from_pod(pod_name: str) -> str:
    return _POD_SUFFIX.sub("", pod_name)


def _target(issue: Issue, params: dict) -> tuple[str, str]:
    pod = str(params.get("pod_name") or "")
    namespace = str(params.get("namespace") or "")
    resource = issue.affected_resource or ""
    if not pod and resource:
        if "/" in resource:
            ns, _, pod = resource.partition("/")
            namespace = namespace or ns
        else:
            pod = resource
    return namespace or "default", pod


def _supported(action: Optional[str]) -> Optional[CommandType]:
    if not action:
        return None
    if action in _ACTION_ALIASES:
        return _ACTION_ALIASES[action]
    try:
        return CommandType(action)
    except ValueError:
        return None


def plan_action(issue: Issue) -> Optional[PlannedAction]:
    """Return the command for this issue, or None when nothing safe can be targeted."""
    analysis = issue.analysis or {}
    suggested = analysis.get("suggested_action")
    params = dict(analysis.get("action_params") or {})
    namespace, pod = _target(issue, params)
    deployment = str(params.get("deployment_name") or (deployment_from_pod(pod) if pod else ""))
    kind = issue.kind.lower()
    reason = f"auto_heal_{kind}"

    if kind in RESTART_KINDS:
        planned = PlannedAction(CommandType.restart_pod,
                                {"pod_name": pod, "namespace": namespace, "reason": reason})
    elif kind in SCALE_KINDS:
        planned = PlannedAction(CommandType.scale_deployment, {
            "deployment_name": deployment,
            "namespace": namespace,
            "replicas": params.get("replicas") or DEFAULT_REPLICAS,
        })
    elif kind in RESOURCE_KINDS:
        resources = {k: params.get(k) or v for k, v in DEFAULT_RESOURCES.items()}
        planned = PlannedAction(CommandType.update_deployment_resources, {
            "deployment_name": deployment,
            "namespace": namespace,
            "container_name": params.get("container_name") or (pod.split("-")[0] if pod else ""),
            **resources,
        })
    elif kind == "image_pull_error":
        if params.get("new_image"):
            planned = PlannedAction(CommandType.update_deployment_image, {
                "deployment_name": deployment,
                "namespace": namespace,
                "container_name": params.get("container_name") or "",
                "new_image": params["new_image"],
                "old_image": params.get("old_image"),
            })
        else:
            planned = PlannedAction(CommandType.restart_pod,
                                    {"pod_name": pod, "namespace": namespace, "reason": reason})
    else:
        command_type = _supported(suggested)
        if command_type is None:
            return None
        planned = PlannedAction(command_type, {
            "pod_name": pod,
            "namespace": namespace,
            "reason": reason,
            **({"deployment_name": deployment} if deployment else {}),
            **params,
        })

    if not planned.params.get("pod_name") and not planned.params.get("deployment_name"):
        return None
    return planned
