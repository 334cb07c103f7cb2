"""
Directory Sync Cron Job: periodic reconciliation of every connected workspace.

This module runs as a scheduled job (via cron or similar) to:
1. Sync each organization's directory with its Slack channel
2. Drain due delayed tasks (setup reminders)

Typical cron schedule: */30 * * * * (every 30 minutes)
"""

import asyncio
import logging
import traceback
from datetime import datetime, timezone
from typing import Any

import httpx
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import get_settings
from ..core.database import build_engine, build_session_factory
from ..models import Organization, SyncTrigger
from ..services.tasks import task_runner
from ..services.user_sync import sync_organization_directory

logger = logging.getLogger(__name__)
settings = get_settings()


# =============================================================================
# ALERTING
# =============================================================================


async def send_alert(
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
) -> None:
    """
    Send an alert when the cron job fails.

    Supports multiple channels:
    - Slack webhook
    - Generic webhook (for PagerDuty, Opsgenie, etc.)
    - Logs (always)
    """
    # Always log the error
    log_message = f"[CRON ALERT] {title}: {message}"
    if details:
        log_message += f" | Details: {details}"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    if settings.slack_alerts_webhook_url:
        try:
            await _send_slack_alert(settings.slack_alerts_webhook_url, title, message, severity, details)
        except Exception as e:
            logger.error(f"Failed to send Slack alert: {e}")

    if settings.alert_webhook_url:
        try:
            await _send_webhook_alert(settings.alert_webhook_url, title, message, severity, details)
        except Exception as e:
            logger.error(f"Failed to send webhook alert: {e}")


async def _send_slack_alert(
    webhook_url: str,
    title: str,
    message: str,
    severity: str,
    details: dict | None,
) -> None:
    """Send alert to Slack."""
    color = "#dc2626" if severity == "critical" else "#f59e0b"  # Red or orange

    blocks = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"🚨 {title}", "emoji": True},
        },
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": message},
        },
    ]

    if details:
        details_text = "\n".join([f"• *{k}*: {v}" for k, v in details.items()])
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": details_text},
        })

    blocks.append({
        "type": "context",
        "elements": [
            {"type": "mrkdwn", "text": f"Severity: *{severity.upper()}* | Time: {datetime.now(timezone.utc).isoformat()}"},
        ],
    })

    async with httpx.AsyncClient() as client:
        await client.post(
            webhook_url,
            json={"attachments": [{"color": color, "blocks": blocks}]},
            timeout=10,
        )


async def _send_webhook_alert(
    webhook_url: str,
    title: str,
    message: str,
    severity: str,
    details: dict | None,
) -> None:
    """Send alert to generic webhook endpoint."""
    payload = {
        "title": title,
        "message": message,
        "severity": severity,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": "pulse-directory-sync",
        "details": details or {},
    }

    async with httpx.AsyncClient() as client:
        await client.post(webhook_url, json=payload, timeout=10)


# =============================================================================
# JOB
# =============================================================================


async def connected_organizations(
    session: AsyncSession, organization_slug: str | None = None
) -> list[Organization]:
    """Organizations linked to a Slack workspace (or only `organization_slug`)."""
    query = select(Organization).where(
        or_(Organization.slack_team_id.is_not(None), Organization.slack_bot_token.is_not(None))
    )
    if organization_slug:
        query = query.where(Organization.slug == organization_slug)
    result = await session.execute(query.order_by(Organization.slug))
    return list(result.scalars().all())


async def run_directory_sync_job(
    database_url: str | None = None,
    organization_slug: str | None = None,
    tasks_only: bool = False,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    """
    Main entry point for the directory sync cron job.

    This function:
    1. Syncs every connected organization, one session each
    2. Runs due delayed tasks
    3. Alerts when organizations failed or the job crashed

    Returns:
        Job result summary
    """
    start_time = datetime.now(timezone.utc)
    logger.info(f"Starting directory sync job at {start_time.isoformat()}")

    engine = None
    if session_factory is None:
        config = settings if database_url is None else settings.model_copy(
            update={"database_url": database_url}
        )
        engine = build_engine(config)
        session_factory = build_session_factory(engine)

    results: dict[str, Any] = {
        "started_at": start_time.isoformat(),
        "completed_at": None,
        "organizations_synced": 0,
        "organizations_failed": 0,
        "created": 0,
        "reactivated": 0,
        "deactivated": 0,
        "onboarded": 0,
        "tasks": {},
        "errors": [],
    }

    try:
        if not tasks_only:
            async with session_factory() as session:
                organizations = await connected_organizations(session, organization_slug)
                org_ids = [org.id for org in organizations]

            logger.info(f"Syncing {len(org_ids)} organization(s)")

            for org_id in org_ids:
                # Fresh session per organization: one bad run never poisons the next
                async with session_factory() as session:
                    organization = await session.get(Organization, org_id)
                    if organization is None:
                        continue
                    slug = organization.slug
                    outcome = await sync_organization_directory(
                        session, organization, SyncTrigger.SCHEDULED
                    )

                if outcome.ok:
                    results["organizations_synced"] += 1
                    for key in ("created", "reactivated", "deactivated", "onboarded"):
                        results[key] += getattr(outcome, key)
                else:
                    results["organizations_failed"] += 1
                    results["errors"].append(f"{slug}: {outcome.error.code}")

        async with session_factory() as session:
            results["tasks"] = await task_runner.run_due(session)

    except Exception as e:
        error_msg = f"Directory sync job failed: {str(e)}"
        logger.error(error_msg)
        results["errors"].append(error_msg)

        # CRITICAL: Alert on job failure
        await send_alert(
            title="Directory Sync Job Failed",
            message="The directory sync job crashed unexpectedly.",
            severity="critical",
            details={
                "error": str(e),
                "traceback": traceback.format_exc()[-500:],  # Last 500 chars
                "started_at": results["started_at"],
                "synced_before_crash": results["organizations_synced"],
            },
        )
        raise

    finally:
        if engine is not None:
            await engine.dispose()

    end_time = datetime.now(timezone.utc)
    results["completed_at"] = end_time.isoformat()
    results["duration_seconds"] = (end_time - start_time).total_seconds()

    logger.info(
        f"Directory sync job completed in {results['duration_seconds']:.2f}s: "
        f"{results['organizations_synced']} synced, {results['organizations_failed']} failed, "
        f"{results['created']} created, {results['deactivated']} deactivated"
    )

    # Alert if there were partial failures (some organizations failed but job completed)
    if results["organizations_failed"] > 0:
        await send_alert(
            title="Directory Sync Completed with Warnings",
            message=f"{results['organizations_failed']} organization(s) could not be synced.",
            severity="warning",
            details={
                "organizations_synced": results["organizations_synced"],
                "organizations_failed": results["organizations_failed"],
                "errors": results["errors"][:5],  # First 5 errors
            },
        )

    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    """CLI entry point for the directory sync job."""
    import argparse
    import sys

    parser = argparse.ArgumentParser(description="Run the directory sync cron job")
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database connection string (defaults to DATABASE_URL)",
    )
    parser.add_argument(
        "--organization",
        default=None,
        help="Only sync the organization with this slug",
    )
    parser.add_argument(
        "--tasks-only",
        action="store_true",
        help="Only run due delayed tasks, skip directory sync",
    )

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        results = asyncio.run(run_directory_sync_job(
            database_url=args.database_url,
            organization_slug=args.organization,
            tasks_only=args.tasks_only,
        ))
        print(f"Job completed: {results}")
    except Exception as e:
        print(f"Job failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
