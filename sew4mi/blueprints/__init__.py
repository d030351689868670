from .cron import cron_bp
from .disputes import disputes_bp
from .escrow import escrow_bp
from .milestones import milestones_bp
from .notifications import notifications_bp
from .webhooks import webhooks_bp

__all__ = ["cron_bp", "disputes_bp", "escrow_bp", "milestones_bp", "notifications_bp", "webhooks_bp"]
