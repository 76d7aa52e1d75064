# Models package — import all models here so Alembic can discover them.

from codledger.models.user import User  # noqa: F401
from codledger.models.audit import AuditEvent  # noqa: F401
from codledger.models.webhook_event import WebhookEvent  # noqa: F401
from codledger.models.task import CachedTask, TaskConflict, TaskHistory  # noqa: F401
from codledger.models.cod import CodQueueEntry, SettlementAttempt  # noqa: F401
