"""
Monitoring and alerting for ledger consistency.
"""

from .alerts import AlertManager, AlertLevel, Alert
from .metrics import MetricsCollector

__all__ = ["AlertManager", "AlertLevel", "Alert", "MetricsCollector"]
