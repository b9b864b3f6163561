"""tradesync.sync

Per-connection sync orchestration, credential vaults and broker health.
"""

from .health import AlertGate, BrokerHealth, HealthStatus, determine_health, health_report
from .service import SyncService, is_sync_due
from .vault import CredentialVault, EnvCredentialVault, StaticCredentialVault

__all__ = [
    "AlertGate",
    "BrokerHealth",
    "CredentialVault",
    "EnvCredentialVault",
    "HealthStatus",
    "StaticCredentialVault",
    "SyncService",
    "determine_health",
    "health_report",
    "is_sync_due",
]
