"""
KubeHeal Authentication
-------------------------
Two FastAPI dependencies:

get_agent      - used by the agent-facing ingest endpoints.
                 X-Agent-Key header is always required. Candidate rows are found by
                 key_prefix and the key is checked with bcrypt; the cluster_id is
                 DERIVED from the credential record and cannot be supplied by the caller.
                 Missing, unknown or inactive key → HTTP 401.

get_operator   - used by the dashboard-facing endpoints.
                 When REQUIRE_API_KEY=false (default for local dev) the operator id
                 is taken from the X-Operator-Id header, defaulting to "default".
                 When REQUIRE_API_KEY=true the X-Api-Key header is mandatory and the
                 operator id comes from the OperatorApiKey record → HTTP 403 otherwise.

Cluster scoping: operators only see clusters whose owner_id matches; anything
else is reported as not found so cluster ids cannot be probed.

Provision keys with:
    python kubeheal/scripts/bootstrap_cluster.py --name prod-eu --owner alice
"""

import os
from dataclasses import dataclass

import bcrypt
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from kubeheal.services.shared.database import get_db
from kubeheal.services.shared.errors import NotFoundError

REQUIRE_API_KEY: bool = os.getenv("REQUIRE_API_KEY", "false").lower() == "true"
BCRYPT_ROUNDS: int = int(os.getenv("BCRYPT_ROUNDS", "12"))
KEY_PREFIX_LENGTH = 16


def hash_key(plain_key: str) -> str:
    return bcrypt.hashpw(plain_key.encode(), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode()


def key_prefix(plain_key: str) -> str:
    return plain_key[:KEY_PREFIX_LENGTH]


def _verify_key(plain_key: str, key_hash: str) -> bool:
    try:
        return bcrypt.checkpw(plain_key.encode(), key_hash.encode())
    except ValueError:
        # Malformed stored hash
        return False


def _lookup_key(model, plain_key: str, db: Session):
    """Find the active key row whose bcrypt hash matches; the prefix narrows the candidates."""
    candidates = (
        db.query(model)
        .filter(model.key_prefix == key_prefix(plain_key), model.active == True)  # noqa: E712
        .all()
    )
    for record in candidates:
        if _verify_key(plain_key, record.key_hash):
            return record
    return None


@dataclass(frozen=True)
class AgentIdentity:
    credential_id: int
    cluster_id:    int
    key_prefix:    str


def get_agent(
    x_agent_key: str | None = Header(None, alias="X-Agent-Key"),
    db: Session = Depends(get_db),
) -> AgentIdentity:
    """FastAPI dependency: resolves the agent credential for the current request."""
    from kubeheal.services.shared.models import AgentCredential

    if not x_agent_key:
        raise HTTPException(status_code=401, detail="X-Agent-Key header is required.")

    record = _lookup_key(AgentCredential, x_agent_key, db)
    if record is None:
        raise HTTPException(status_code=401, detail="Invalid or inactive agent key.")

    return AgentIdentity(
        credential_id=record.id,
        cluster_id=record.cluster_id,
        key_prefix=record.key_prefix,
    )


def get_operator(
    x_api_key: str | None = Header(None, alias="X-Api-Key"),
    x_operator_id: str | None = Header(None, alias="X-Operator-Id"),
    db: Session = Depends(get_db),
) -> str:
    """FastAPI dependency: returns the operator id used to scope cluster access."""
    from kubeheal.services.shared.models import OperatorApiKey

    if not REQUIRE_API_KEY:
        return x_operator_id or "default"

    if not x_api_key:
        raise HTTPException(
            status_code=403,
            detail="X-Api-Key header is required. "
                   "Provision a key with: python kubeheal/scripts/bootstrap_cluster.py",
        )

    record = _lookup_key(OperatorApiKey, x_api_key, db)
    if record is None:
        raise HTTPException(status_code=403, detail="Invalid or inactive API key.")

    # Security: operator id comes from the DB record - not from the request header
    return record.operator_id


def get_owned_cluster(db: Session, cluster_id: int, operator_id: str):
    """Return the Cluster if the operator owns it, else raise NotFoundError."""
    from kubeheal.services.shared.models import Cluster

    cluster = db.get(Cluster, cluster_id)
    if cluster is None or cluster.owner_id != operator_id:
        raise NotFoundError(f"Cluster {cluster_id} not found")
    return cluster


def owned_cluster_ids(db: Session, operator_id: str) -> list[int]:
    from kubeheal.services.shared.models import Cluster

    return [row.id for row in db.query(Cluster.id).filter(Cluster.owner_id == operator_id).all()]
