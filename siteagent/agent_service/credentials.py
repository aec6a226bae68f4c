"""
Credential Ledger — the platform only reveals an API key's secret in the
response that created it, so each secret is recorded once and can be handed
to a caller exactly once.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from siteagent.gradient.models import AccessCredential

logger = logging.getLogger(__name__)


class IssuedCredential(BaseModel):
    credential_id: str
    agent_id: str
    name: str = ""
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    consumed: bool = False


class CredentialLedger:
    """In-memory record of credentials issued per agent."""

    def __init__(self):
        self._records: Dict[str, List[IssuedCredential]] = {}
        self._secrets: Dict[str, str] = {}

    def record(self, agent_id: str, credential: AccessCredential) -> IssuedCredential:
        credential_id = credential.uuid or f"{agent_id}:{len(self._records.get(agent_id, []))}"
        entry = IssuedCredential(credential_id=credential_id, agent_id=agent_id, name=credential.name)
        self._records.setdefault(agent_id, []).append(entry)
        if credential.secret:
            self._secrets[credential_id] = credential.secret
        else:
            entry.consumed = True
            logger.warning(f"[Provisioner] Credential {credential_id} for agent {agent_id} came back without a secret")
        return entry

    def consume(self, credential_id: str) -> Optional[str]:
        """Return the secret once. Later calls return None."""
        secret = self._secrets.pop(credential_id, None)
        if secret is None:
            return None
        for entries in self._records.values():
            for entry in entries:
                if entry.credential_id == credential_id:
                    entry.consumed = True
        return secret

    def issued(self, agent_id: str) -> List[IssuedCredential]:
        return list(self._records.get(agent_id, []))

    def has_unconsumed(self, agent_id: str) -> bool:
        return any(not e.consumed for e in self._records.get(agent_id, []))
