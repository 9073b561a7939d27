"""Tests for run notifications."""

import asyncio

from controller.src.config import Settings
from controller.src.models.step import NotificationTarget, PipelineRun, RunStatus, StepResult, StepStatus
from controller.src.notifications import EmailChannel, NotificationChannel, SlackChannel
from controller.src.services.notifier import Notifier, build_channels, compose

class Inbox(NotificationChannel):
    def __init__(self):
        self.messages = []

    async def send(self, recipients, subject, body):
        self.messages.append((recipients, subject, body))

class Unreachable(NotificationChannel):
    def __init__(self):
        self.attempts = 0

    async def send(self, recipients, subject, body):
        self.attempts += 1
        raise ConnectionRefusedError("mail server unreachable")

def finished_run(status=RunStatus.SUCCEEDED):
    run = PipelineRun(run_id="run-1", build_number=12, branch="main", commit_sha="abc123", environment="prod")
    run.record(StepResult(name="Build", ordinal=0, status=StepStatus.SUCCEEDED, duration=12.5))
    if status == RunStatus.FAILED:
        run.record(StepResult(name="Deploy", ordinal=1, status=StepStatus.FAILED, error="rollout timed out"))
    elif status == RunStatus.UNSTABLE:
        run.record(StepResult(name="Scan", ordinal=1, status=StepStatus.WARNING, error="3 HIGH findings"))
    run.finalize()
    return run

def test_exactly_one_message_per_run():
    inbox = Inbox()
    notifier = Notifier({"email": inbox}, [NotificationTarget(channel="email", recipients=["dev@example.com"])])
    run = finished_run()

    assert asyncio.run(notifier.notify(run, "shop")) == 1
    assert asyncio.run(notifier.notify(run, "shop")) == 0
    assert len(inbox.messages) == 1
    assert run.notified

def test_delivery_failure_does_not_change_run():
    channel = Unreachable()
    notifier = Notifier({"email": channel}, [NotificationTarget(channel="email", recipients=["dev@example.com"])])
    run = finished_run(RunStatus.FAILED)

    delivered = asyncio.run(notifier.notify(run, "shop"))

    assert delivered == 0
    assert channel.attempts == 1
    assert run.status == RunStatus.FAILED
    assert run.notified

def test_failed_channel_does_not_block_others():
    inbox = Inbox()
    notifier = Notifier(
        {"email": Unreachable(), "slack": inbox},
        [NotificationTarget(channel="email", recipients=["a@example.com"]), NotificationTarget(channel="slack")],
    )
    assert asyncio.run(notifier.notify(finished_run(), "shop")) == 1
    assert len(inbox.messages) == 1

def test_unconfigured_channel_is_skipped():
    notifier = Notifier({}, [NotificationTarget(channel="slack")])
    assert asyncio.run(notifier.notify(finished_run(), "shop")) == 0

def test_running_run_is_not_notified():
    inbox = Inbox()
    notifier = Notifier({"email": inbox}, [NotificationTarget(channel="email", recipients=["a@example.com"])])
    run = PipelineRun(run_id="run-2", branch="main", status=RunStatus.RUNNING)

    assert asyncio.run(notifier.notify(run, "shop")) == 0
    assert inbox.messages == []
    assert not run.notified

def test_compose_failed_run():
    subject, body = compose(finished_run(RunStatus.FAILED), "shop")

    assert subject == "[FAILED] shop #12 (main)"
    assert "Failed stage: Deploy" in body
    assert "Error: rollout timed out" in body
    assert "Environment: prod" in body

def test_compose_unstable_run():
    subject, body = compose(finished_run(RunStatus.UNSTABLE), "shop")

    assert subject == "[UNSTABLE] shop #12 (main)"
    assert "Non-blocking failures:" in body
    assert "Scan: 3 HIGH findings" in body
    assert "Failed stage" not in body

def test_compose_failure_before_first_stage():
    run = PipelineRun(run_id="run-3", build_number=4, branch="hotfix/x")
    run.fail("No environment binding matches 'hotfix/x'")
    subject, body = compose(run, "shop")

    assert subject.startswith("[FAILED]")
    assert "Failed stage: (before first stage)" in body
    assert "No environment binding matches 'hotfix/x'" in body

def test_email_message():
    channel = EmailChannel(host="smtp.example.com", sender="ci@example.com")
    message = channel.build_message(["a@example.com", "b@example.com"], "[SUCCEEDED] shop #1 (main)", "All good")

    assert message["To"] == "a@example.com, b@example.com"
    assert message["From"] == "ci@example.com"
    assert message["Subject"] == "[SUCCEEDED] shop #1 (main)"
    assert "All good" in message.get_content()

def test_slack_payload_color_follows_status():
    channel = SlackChannel("https://hooks.slack.example/T000")
    payload = channel.build_payload("#deploys", "[FAILED] shop #1 (main)", "Deploy failed")

    assert payload["channel"] == "#deploys"
    assert payload["attachments"][0]["color"] == SlackChannel.STATUS_COLOR["failed"]
    assert payload["attachments"][0]["title"] == "[FAILED] shop #1 (main)"

def test_build_channels():
    assert set(build_channels(Settings())) == {"email"}
    with_slack = Settings(slack_webhook_url="https://hooks.slack.example/T000")
    assert set(build_channels(with_slack)) == {"email", "slack"}
