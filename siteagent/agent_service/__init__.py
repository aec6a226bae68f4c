"""Per-site resource provisioning and attachment repair."""
from .credentials import CredentialLedger, IssuedCredential
from .provisioner import IdempotentProvisioner, default_instruction
from .repair import AttachmentReconciler, RepairResult

__all__ = [
    "CredentialLedger", "IssuedCredential",
    "IdempotentProvisioner", "default_instruction",
    "AttachmentReconciler", "RepairResult",
]
