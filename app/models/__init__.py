# Models package: import all models here so Alembic can discover them.

from app.models.tenant import TenantAccount  # noqa: F401
from app.models.transaction import Transaction  # noqa: F401
from app.models.inbound_event import InboundEvent  # noqa: F401
from app.models.refund import RefundRecord  # noqa: F401
from app.models.audit import AuditEvent  # noqa: F401
