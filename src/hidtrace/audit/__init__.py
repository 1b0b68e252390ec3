"""
Incident store.

Append-only persistent storage for emitted incidents.
"""

from hidtrace.audit.database import IncidentStore
from hidtrace.audit.models import Base, IncidentRecord

__all__ = [
    "IncidentStore",
    "Base",
    "IncidentRecord",
]
