"""
In-process coordination state: per-key provisioning guard and the
per-knowledge-base quality verdict cache.
"""
from siteagent.cache.provisioning_lock import KeyedLock, ProvisioningLockManager
from siteagent.cache.verdict_cache import QualityVerdict, VerdictCache

__all__ = ["KeyedLock", "ProvisioningLockManager", "QualityVerdict", "VerdictCache"]
