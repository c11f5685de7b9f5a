"""
Error taxonomy shared by all services.

  ValidationFailure   - bad input; reported per item, never retried
  TransientError      - store / classifier / transport unavailable or timed out; retry later
  ClassifierError     - classifier answered with a non-retryable protocol error
  AuthorizationError  - missing / inactive credential or foreign resource
  NotFoundError       - unknown cluster, issue, approval or command
  PolicyError         - request conflicts with policy or current state
  AnalysisInProgress  - another detection run holds the cluster lease

Routes translate these into HTTPException; sweeps convert transient errors
into retry state instead of letting them cross component boundaries.
"""


class KubeHealError(Exception):
    """Base class for domain errors."""


class ValidationFailure(KubeHealError):
    def __init__(self, reason: str, index: int | None = None, kind: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.index = index
        self.kind = kind


class TransientError(KubeHealError):
    def __init__(self, message: str, retry_after_seconds: int = 30):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class ClassifierError(KubeHealError):
    pass


class AuthorizationError(KubeHealError):
    pass


class NotFoundError(KubeHealError):
    pass


class PolicyError(KubeHealError):
    pass


class AnalysisInProgress(KubeHealError):
    pass
