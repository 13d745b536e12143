from .user import User  # noqa: F401
from .group import RoscaGroup  # noqa: F401
from .payment_account import PaymentAccount  # noqa: F401
from .contribution import Contribution  # noqa: F401
from .payout import Payout  # noqa: F401

from .settlement import SettlementIntent, Settlement  # noqa: F401
from .reserve import ReserveWallet, ReserveTransaction  # noqa: F401
from .dispute import PaymentDispute  # noqa: F401

from .notification_queue import NotificationQueue  # noqa: F401

from .audit_log import AuditLog  # noqa: F401

from .webhook_event import WebhookEvent  # noqa: F401

from .rate_limit import RateLimitHit  # noqa: F401
