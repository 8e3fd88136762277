"""
Tests for alerting
===================
"""

import json

import httpx
import pytest

from resilient_ops.observability import (
    AlertType,
    AlertRule,
    AlertEvaluator,
    AlertSink,
    AlertChannel,
    AlertResult,
    AlertDispatcher,
    TriggeredAlert,
    WebhookChannel,
    SlackChannel,
    HealthProbeResult,
    ProbeStatus,
    create_alert_dispatcher,
    should_trigger,
    MetricsObserver,
    EventKind,
)


class RecordingSink(AlertSink):
    def __init__(self):
        self.delivered = []

    async def deliver(self, alert):
        self.delivered.append(alert)


class BrokenSink(AlertSink):
    async def deliver(self, alert):
        raise RuntimeError("sink down")


class RecordingChannel(AlertChannel):
    def __init__(self, channel_name="recording"):
        self._name = channel_name
        self.sent = []

    @property
    def name(self):
        return self._name

    async def send(self, alert):
        self.sent.append(alert)
        return AlertResult(success=True, channel=self.name)


def probe(service="X", status=ProbeStatus.HEALTHY, **kwargs):
    return HealthProbeResult(service=service, status=status, **kwargs)


class TestShouldTrigger:
    """Tests for rule evaluation."""

    def test_service_down(self):
        rule = AlertRule("X", AlertType.SERVICE_DOWN)
        assert should_trigger(rule, probe(status=ProbeStatus.DOWN))
        assert not should_trigger(rule, probe(status=ProbeStatus.DEGRADED))

    def test_slow_response_default_threshold(self):
        rule = AlertRule("X", AlertType.SLOW_RESPONSE)
        assert rule.effective_threshold == 5000.0
        assert should_trigger(rule, probe(response_time=5001))
        assert not should_trigger(rule, probe(response_time=5000))
        assert not should_trigger(rule, probe())

    def test_quota_warning(self):
        rule = AlertRule("X", AlertType.QUOTA_WARNING)
        assert rule.effective_threshold == 80.0
        assert should_trigger(rule, probe(quota_used=80, quota_limit=100))
        assert not should_trigger(rule, probe(quota_used=79, quota_limit=100))
        assert not should_trigger(rule, probe(quota_used=10, quota_limit=0))
        assert not should_trigger(rule, probe(quota_used=None, quota_limit=100))

    def test_custom_threshold(self):
        rule = AlertRule("X", AlertType.SLOW_RESPONSE, threshold=100)
        assert should_trigger(rule, probe(response_time=150))


class TestAlertEvaluator:
    """Tests for AlertEvaluator bookkeeping."""

    def test_service_down_updates_rule(self):
        rule = AlertRule("X", AlertType.SERVICE_DOWN, is_active=True)
        evaluator = AlertEvaluator(rules=[rule])

        fired = evaluator.evaluate(probe(status=ProbeStatus.DOWN, error_message="connection refused"))

        assert len(fired) == 1
        assert rule.notifications_sent == 1
        assert rule.last_triggered is not None
        assert fired[0].alert_type == AlertType.SERVICE_DOWN
        assert "connection refused" in fired[0].message
        assert evaluator.history == fired

    def test_fires_every_cycle(self):
        rule = AlertRule("X", AlertType.SERVICE_DOWN)
        evaluator = AlertEvaluator(rules=[rule])
        for _ in range(3):
            evaluator.evaluate(probe(status=ProbeStatus.DOWN))
        assert rule.notifications_sent == 3

    def test_inactive_and_other_service_rules_ignored(self):
        inactive = AlertRule("X", AlertType.SERVICE_DOWN, is_active=False)
        other = AlertRule("Y", AlertType.SERVICE_DOWN)
        evaluator = AlertEvaluator(rules=[inactive, other])

        assert evaluator.evaluate(probe(status=ProbeStatus.DOWN)) == []
        assert inactive.notifications_sent == 0
        assert other.notifications_sent == 0
        assert evaluator.rules_for("Y") == [other]
        assert evaluator.rules_for("X") == []

    def test_emits_alert_events(self):
        observer = MetricsObserver()
        evaluator = AlertEvaluator(rules=[AlertRule("X", AlertType.SERVICE_DOWN)], observer=observer)
        evaluator.evaluate(probe(status=ProbeStatus.DOWN))
        assert observer.count(EventKind.ALERT_TRIGGERED, "X") == 1

    def test_history_is_bounded(self):
        evaluator = AlertEvaluator(rules=[AlertRule("X", AlertType.SERVICE_DOWN)], history_size=2)
        for _ in range(5):
            evaluator.evaluate(probe(status=ProbeStatus.DOWN))
        assert len(evaluator.history) == 2

    @pytest.mark.asyncio
    async def test_process_delivers_and_isolates_sink_errors(self):
        sink = RecordingSink()
        evaluator = AlertEvaluator(
            rules=[AlertRule("X", AlertType.SERVICE_DOWN)],
            sinks=[BrokenSink(), sink],
        )

        fired = await evaluator.process(probe(status=ProbeStatus.DOWN))

        assert len(fired) == 1
        assert sink.delivered == fired


@pytest.mark.asyncio
class TestAlertDispatcher:
    """Tests for delivery cooldown and rate limiting."""

    async def test_cooldown_per_fingerprint(self):
        channel = RecordingChannel()
        dispatcher = AlertDispatcher(channels=[channel], cooldown_seconds=900)

        await dispatcher.deliver(TriggeredAlert("X", AlertType.SERVICE_DOWN, timestamp=1000.0))
        await dispatcher.deliver(TriggeredAlert("X", AlertType.SERVICE_DOWN, timestamp=1030.0))
        await dispatcher.deliver(TriggeredAlert("X", AlertType.SLOW_RESPONSE, timestamp=1030.0))
        await dispatcher.deliver(TriggeredAlert("X", AlertType.SERVICE_DOWN, timestamp=2000.0))

        assert [a.alert_type for a in channel.sent] == [
            AlertType.SERVICE_DOWN,
            AlertType.SLOW_RESPONSE,
            AlertType.SERVICE_DOWN,
        ]
        assert dispatcher.suppressed == 1

    async def test_rate_limit(self):
        channel = RecordingChannel()
        dispatcher = AlertDispatcher(channels=[channel], cooldown_seconds=0, rate_limit_per_minute=2)

        for service in ("a", "b", "c"):
            await dispatcher.deliver(TriggeredAlert(service, AlertType.SERVICE_DOWN))

        assert len(channel.sent) == 2
        assert dispatcher.suppressed == 1

    async def test_raising_channel_does_not_block_others(self, caplog):
        class InvalidUrlChannel(RecordingChannel):
            async def send(self, alert):
                raise httpx.InvalidURL("Invalid non-printable ASCII character in URL")

        recording = RecordingChannel()
        dispatcher = AlertDispatcher(channels=[InvalidUrlChannel("webhook"), recording])

        await dispatcher.deliver(TriggeredAlert("X", AlertType.SERVICE_DOWN))

        assert len(recording.sent) == 1
        assert "Alert send failed to webhook: InvalidURL" in caplog.text

    async def test_create_dispatcher_channels(self):
        dispatcher = create_alert_dispatcher(
            webhook_url="https://ops.example.com/alerts",
            slack_webhook="https://hooks.slack.com/services/T/B/X",
        )
        assert sorted(dispatcher._channels) == ["log", "slack", "webhook"]


@pytest.mark.asyncio
class TestWebhookChannels:
    """Tests for httpx-backed channels."""

    async def test_webhook_posts_alert(self):
        received = []

        def handler(request: httpx.Request):
            received.append(json.loads(request.content))
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            channel = WebhookChannel("https://ops.example.com/alerts", client=client)
            result = await channel.send(TriggeredAlert("X", AlertType.SERVICE_DOWN, message="X is down"))

        assert result.success
        assert received[0]["service"] == "X"
        assert received[0]["alert_type"] == "service_down"

    async def test_webhook_failure_status(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=transport) as client:
            channel = WebhookChannel("https://ops.example.com/alerts", client=client)
            result = await channel.send(TriggeredAlert("X", AlertType.SERVICE_DOWN))

        assert not result.success
        assert result.error == "HTTP 500"

    async def test_slack_payload(self):
        received = []

        def handler(request: httpx.Request):
            received.append(json.loads(request.content))
            return httpx.Response(200)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            channel = SlackChannel("https://hooks.slack.com/services/T/B/X", channel="#ops", client=client)
            await channel.send(TriggeredAlert("stripe", AlertType.QUOTA_WARNING, message="quota at 85%"))

        assert received[0]["channel"] == "#ops"
        assert "*stripe*" in received[0]["text"]
