# Database models
from app.models.database import (
    Integration,
    IntegrationToken,
    IntegrationConnection,
    IntegrationRawEvent,
    IntegrationSleep,
    IntegrationRecovery,
    IntegrationWorkout,
    IntegrationCycle,
)
from app.models.sync_log import SyncLog

__all__ = [
    "Integration",
    "IntegrationToken",
    "IntegrationConnection",
    "IntegrationRawEvent",
    "IntegrationSleep",
    "IntegrationRecovery",
    "IntegrationWorkout",
    "IntegrationCycle",
    "SyncLog",
]
