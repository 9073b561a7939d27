"""
Run outcome notifications.

One message per finalized run, to every configured target. Delivery is
best-effort: failures are logged and never affect the run.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Tuple

from controller.src.config import Settings
from controller.src.models.step import NotificationTarget, PipelineRun, RunStatus, StepStatus
from controller.src.notifications import EmailChannel, NotificationChannel, SlackChannel

logger = logging.getLogger(__name__)


def build_channels(settings: Settings) -> Dict[str, NotificationChannel]:
    channels: Dict[str, NotificationChannel] = {
        "email": EmailChannel(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.smtp_sender,
            username=settings.smtp_username,
            password=settings.smtp_password,
            starttls=settings.smtp_starttls,
        ),
    }
    if settings.slack_webhook_url:
        channels["slack"] = SlackChannel(settings.slack_webhook_url, settings.slack_channel)
    return channels


def compose(run: PipelineRun, pipeline_name: str) -> Tuple[str, str]:
    """Build (subject, body) for a finalized run."""
    status = run.status.value
    subject = f"[{status.upper()}] {pipeline_name} #{run.build_number} ({run.branch})"

    lines = [
        f"Pipeline: {pipeline_name}",
        f"Build: #{run.build_number} ({run.run_id})",
        f"Branch: {run.branch}",
        f"Commit: {run.commit_sha or '-'}",
        f"Environment: {run.environment or '-'}",
        f"Status: {status}",
    ]

    if run.finished_at:
        lines.append(f"Duration: {(run.finished_at - run.started_at).total_seconds():.0f}s")

    if run.status in (RunStatus.FAILED, RunStatus.ABORTED):
        lines.append("")
        lines.append(f"Failed stage: {run.failed_step or '(before first stage)'}")
        lines.append(f"Error: {run.error or '-'}")

    warnings = [r for r in run.results if r.status == StepStatus.WARNING]
    if warnings:
        lines.append("")
        lines.append("Non-blocking failures:")
        for result in warnings:
            lines.append(f"  - {result.name}: {result.error}")

    if run.results:
        lines.append("")
        lines.append("Stages:")
        for result in run.results:
            lines.append(f"  {result.ordinal + 1}. {result.name}: {result.status.value} ({result.duration:.1f}s)")

    return subject, "\n".join(lines)


class Notifier:
    def __init__(
        self,
        channels: Mapping[str, NotificationChannel],
        targets: Iterable[NotificationTarget],
    ):
        self._channels = dict(channels)
        self._targets: List[NotificationTarget] = list(targets)

    async def notify(self, run: PipelineRun, pipeline_name: str = "pipeline") -> int:
        """Send the run's outcome; returns the number of successful deliveries."""
        if run.notified:
            logger.warning(f"Run {run.run_id} already notified, ignoring")
            return 0

        if run.status in (RunStatus.QUEUED, RunStatus.RUNNING):
            logger.error(f"Run {run.run_id} is not finalized ({run.status.value}), not notifying")
            return 0

        run.notified = True
        subject, body = compose(run, pipeline_name)
        delivered = 0

        for target in self._targets:
            channel = self._channels.get(target.channel)
            if channel is None:
                logger.warning(f"Notification channel '{target.channel}' is not configured")
                continue

            try:
                await channel.send(target.recipients, subject, body)
                delivered += 1
            except Exception as e:
                logger.error(f"Failed to send {target.channel} notification for run {run.run_id}: {e}")

        logger.info(f"Run {run.run_id} notification sent to {delivered}/{len(self._targets)} targets")
        return delivered
