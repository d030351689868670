"""Scheduled jobs, triggered by an external scheduler with the cron secret."""
from __future__ import annotations

import logging

from flask import Blueprint, jsonify

from sew4mi.blueprints.common import escrow_service, require_cron_secret
from sew4mi.database import get_db
from sew4mi.models import utcnow
from sew4mi.observability import increment_counter, timed
from sew4mi.services.dispute_service import DisputeService
from sew4mi.services.escrow_reminder_service import EscrowReminderService
from sew4mi.services.milestone_service import MilestoneService

cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")
logger = logging.getLogger(__name__)


def _finished(job: str, result: dict):
    increment_counter("cron_runs_total", labels={"job": job})
    logger.info("Cron job finished", extra={"job": job, **{k: v for k, v in result.items() if isinstance(v, int)}})
    return jsonify({"success": True, "job": job, "timestamp": utcnow().isoformat(), "result": result})


@cron_bp.route("/auto-approve-milestones", methods=["POST"])
def auto_approve_milestones():
    denied = require_cron_secret()
    if denied:
        return denied
    with timed("cron_job_ms", labels={"job": "auto_approve_milestones"}):
        result = MilestoneService(get_db(), escrow_service=escrow_service()).auto_approve_due_milestones()
    return _finished("auto_approve_milestones", result)


@cron_bp.route("/escrow-reminders", methods=["POST"])
def process_escrow_reminders():
    denied = require_cron_secret()
    if denied:
        return denied
    with timed("cron_job_ms", labels={"job": "escrow_reminders"}):
        result = EscrowReminderService(get_db()).process_escrow_reminders()
    return _finished("escrow_reminders", result)


@cron_bp.route("/escrow-reminders", methods=["GET"])
def escrow_reminder_overview():
    denied = require_cron_secret()
    if denied:
        return denied
    return jsonify(EscrowReminderService(get_db()).get_reminder_overview())


@cron_bp.route("/dispatch-notifications", methods=["POST"])
def dispatch_notifications():
    denied = require_cron_secret()
    if denied:
        return denied
    with timed("cron_job_ms", labels={"job": "dispatch_notifications"}):
        result = EscrowReminderService(get_db()).dispatch_due_notifications()
    return _finished("dispatch_notifications", result)


@cron_bp.route("/escalate-disputes", methods=["POST"])
def escalate_disputes():
    denied = require_cron_secret()
    if denied:
        return denied
    with timed("cron_job_ms", labels={"job": "escalate_disputes"}):
        result = DisputeService(get_db()).auto_escalate_stale_disputes()
    return _finished("escalate_disputes", result)
