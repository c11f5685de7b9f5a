"""
Issue candidates as returned by the classifier.

A candidate is a tagged union on `category`: anomalies describe workload or
resource trouble, threats describe security findings. Items are validated one
at a time so a single malformed entry never discards the rest of the answer.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from kubeheal.services.shared.models import IssueCategory, Severity


class _CandidateBase(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    kind:              str = Field(..., min_length=1, max_length=128)
    severity:          Severity
    description:       str = Field(..., min_length=1)
    recommendation:    Optional[str] = None
    evidence:          list[Any] = Field(default_factory=list)
    affected_resource: Optional[str] = Field(None, max_length=512)
    suggested_action:  Optional[str] = None
    action_params:     dict[str, Any] = Field(default_factory=dict)


class AnomalyCandidate(_CandidateBase):
    category: Literal["anomaly"]


class ThreatCandidate(_CandidateBase):
    category:  Literal["security"]
    cve_ids:   list[str] = Field(default_factory=list)
    reference: Optional[str] = None


IssueCandidate = Annotated[
    Union[AnomalyCandidate, ThreatCandidate],
    Field(discriminator="category"),
]

candidate_adapter: TypeAdapter = TypeAdapter(IssueCandidate)


def candidate_category(candidate) -> IssueCategory:
    return IssueCategory(candidate.category)
