"""
Sync notifications — summary e-mail sent through the Resend HTTP API.

Fire-and-forget: every failure is logged and swallowed so an e-mail outage
never fails a sync round.  Safe to call when notifications are disabled or no
recipients are configured; the send is skipped silently.

On-demand task:
  send_sync_notification(summary)  — queued by the round orchestrator
"""

import html
import logging
from datetime import datetime, timezone
from typing import Any

import pytz
import requests

from app.core.config import settings
from app.worker import celery_app

logger = logging.getLogger(__name__)

_STATUS_STYLE = {
    "success": ("#10b981", "✅", "Success"),
    "partial": ("#f59e0b", "⚠️", "Partial"),
    "error": ("#ef4444", "❌", "Error"),
}


# ── Summary ───────────────────────────────────────────────────────────────────

def school_result(
    school: str,
    slug: str,
    success: bool,
    *,
    receivables_count: int = 0,
    payables_count: int = 0,
    categories_found: int = 0,
    pending_count: int = 0,
    rounds: int = 1,
    error: str | None = None,
) -> dict[str, Any]:
    return {
        "school": school,
        "slug": slug,
        "success": success,
        "receivables_count": receivables_count,
        "payables_count": payables_count,
        "total_transactions": receivables_count + payables_count,
        "categories_found": categories_found,
        "pending_count": pending_count,
        "rounds": rounds,
        "error": error,
    }


def build_summary(results: list[dict[str, Any]], timestamp: datetime | None = None) -> dict[str, Any]:
    """Aggregate per-school results into the payload the e-mail is rendered from."""
    ok = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]
    if not failed:
        status = "success"
    elif ok:
        status = "partial"
    else:
        status = "error"

    return {
        "status": status,
        "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
        "receivables_count": sum(r["receivables_count"] for r in ok),
        "payables_count": sum(r["payables_count"] for r in ok),
        "total_transactions": sum(r["total_transactions"] for r in ok),
        "categories_found": sum(r["categories_found"] for r in ok),
        "schools_processed": len(results),
        "schools_successful": len(ok),
        "schools_failed": len(failed),
        "error_message": "; ".join(f"{r['school']}: {r['error']}" for r in failed if r["error"]) or None,
        "results": results,
    }


def _local_time(iso_timestamp: str) -> str:
    ts = datetime.fromisoformat(iso_timestamp)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(pytz.timezone(settings.notification_timezone)).strftime("%d/%m/%Y %H:%M")


def render_summary_html(summary: dict[str, Any]) -> str:
    color, icon, label = _STATUS_STYLE.get(summary["status"], _STATUS_STYLE["error"])

    stats = [
        ("🕐 Date/time", _local_time(summary["timestamp"])),
        ("📊 Status", label),
        ("💰 Receivables", f"{summary['receivables_count']} items"),
        ("💸 Payables", f"{summary['payables_count']} items"),
        ("📈 Total synced", f"{summary['total_transactions']} transactions"),
        ("🏷️ Categories found", str(summary["categories_found"])),
    ]
    rows = "".join(
        f'<tr><td style="color:#6b7280;font-weight:600;padding:8px 0">{name}</td>'
        f'<td style="font-weight:700;text-align:right">{html.escape(value)}</td></tr>'
        for name, value in stats
    )

    school_rows = "".join(
        "<li>{name}: {state}</li>".format(
            name=html.escape(r["school"]),
            state=(
                f"{r['total_transactions']} transactions, {r['pending_count']} still pending"
                if r["success"]
                else f"failed ({html.escape(r['error'] or 'unknown error')})"
            ),
        )
        for r in summary["results"]
    )

    error_box = ""
    if summary.get("error_message"):
        error_box = (
            '<div style="background:#fee2e2;border:1px solid #ef4444;border-radius:6px;padding:15px;margin-top:20px">'
            '<h3 style="margin:0 0 10px;color:#dc2626">Error details</h3>'
            f'<p style="margin:0;font-family:monospace;font-size:12px">{html.escape(summary["error_message"])}</p>'
            "</div>"
        )

    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
        '<body style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;padding:20px;color:#333">'
        f'<div style="background:{color};color:white;padding:20px;border-radius:8px 8px 0 0;text-align:center">'
        f"<h1 style=\"margin:0;font-size:24px\">{icon} Conta Azul sync: {label}</h1></div>"
        '<div style="background:#f9fafb;padding:30px;border:1px solid #e5e7eb;border-top:none">'
        f'<table style="width:100%">{rows}</table>'
        f"<ul>{school_rows}</ul>{error_box}</div>"
        '<p style="text-align:center;color:#6b7280;font-size:14px">Automatic Conta Azul sync. Do not reply.</p>'
        "</body></html>"
    )


def summary_subject(summary: dict[str, Any]) -> str:
    _, icon, label = _STATUS_STYLE.get(summary["status"], _STATUS_STYLE["error"])
    return f"{icon} Conta Azul sync: {label}"


# ── Delivery ──────────────────────────────────────────────────────────────────

def send_email(subject: str, body_html: str, recipients: list[str] | None = None) -> bool:
    """
    Send one e-mail through Resend.

    Returns True on success, False on any error (logs the reason).
    """
    recipients = recipients if recipients is not None else settings.notification_recipients
    if not settings.notifications_enabled or not settings.resend_api_key:
        return False
    if not recipients:
        return False
    try:
        resp = requests.post(
            settings.resend_api_url,
            json={
                "from": settings.notification_from,
                "to": recipients,
                "subject": subject,
                "html": body_html,
            },
            headers={"Authorization": f"Bearer {settings.resend_api_key}"},
            timeout=10,
        )
        if resp.ok:
            return True
        logger.warning("Resend returned %d: %s", resp.status_code, resp.text[:200])
        return False
    except Exception as exc:
        logger.warning("Notification e-mail failed: %s", exc)
        return False


@celery_app.task(name="app.services.notifications.send_sync_notification")
def send_sync_notification(summary: dict[str, Any]) -> bool:
    logger.info(
        "Sending sync notification (%s, %d school(s))",
        summary["status"], summary["schools_processed"],
    )
    try:
        body = render_summary_html(summary)
    except Exception as exc:
        logger.warning("Could not render sync notification: %s", exc)
        return False
    return send_email(summary_subject(summary), body)
