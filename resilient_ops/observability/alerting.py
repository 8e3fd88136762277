"""
Alerting
========
Threshold alerts on health probe results.

Rule types:
- service_down: probe status is down
- slow_response: response time above threshold (ms, default 5000)
- quota_warning: quota usage percent at or above threshold (default 80)

Detection and bookkeeping live in AlertEvaluator; rules fire again on
every cycle the condition holds. Delivery is separate: AlertDispatcher
routes triggered alerts to channels (log, webhook, Slack) with a
per-alert cooldown and a global rate limit.
"""

import time
import asyncio
import logging
import hashlib
import threading
from typing import Optional, Dict, Any, List, Deque
from dataclasses import dataclass, field
from collections import deque
from enum import Enum
from abc import ABC, abstractmethod

import httpx

from .events import EventObserver, ResilienceEvent, EventKind, emit_safely
from .probe_store import HealthProbeResult, ProbeStatus

logger = logging.getLogger(__name__)


class AlertType(Enum):
    """Alert rule types."""
    SERVICE_DOWN = "service_down"
    SLOW_RESPONSE = "slow_response"
    QUOTA_WARNING = "quota_warning"


DEFAULT_THRESHOLDS = {
    AlertType.SLOW_RESPONSE: 5000.0,   # ms
    AlertType.QUOTA_WARNING: 80.0,     # percent
}


@dataclass
class AlertRule:
    """Alert rule for one service, mutated when it fires."""
    service: str
    alert_type: AlertType
    threshold: Optional[float] = None
    is_active: bool = True
    last_triggered: Optional[float] = None
    notifications_sent: int = 0

    @property
    def effective_threshold(self) -> Optional[float]:
        if self.threshold is not None:
            return self.threshold
        return DEFAULT_THRESHOLDS.get(self.alert_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "alert_type": self.alert_type.value,
            "threshold": self.effective_threshold,
            "is_active": self.is_active,
            "last_triggered": self.last_triggered,
            "notifications_sent": self.notifications_sent,
        }


@dataclass
class TriggeredAlert:
    """Record of one rule firing."""
    service: str
    alert_type: AlertType
    timestamp: float = field(default_factory=time.time)
    message: str = ""
    fingerprint: str = ""

    def __post_init__(self):
        if not self.fingerprint:
            # Same service + type share a fingerprint for delivery cooldown
            content = f"{self.service}:{self.alert_type.value}"
            self.fingerprint = hashlib.md5(content.encode()).hexdigest()[:12]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "alert_type": self.alert_type.value,
            "timestamp": self.timestamp,
            "message": self.message,
            "fingerprint": self.fingerprint,
        }


def should_trigger(rule: AlertRule, result: HealthProbeResult) -> bool:
    """Evaluate one rule against one probe result."""
    if rule.alert_type == AlertType.SERVICE_DOWN:
        return result.status == ProbeStatus.DOWN
    if rule.alert_type == AlertType.SLOW_RESPONSE:
        return result.response_time is not None and result.response_time > rule.effective_threshold
    if rule.alert_type == AlertType.QUOTA_WARNING:
        percent = result.quota_percent
        return percent is not None and percent >= rule.effective_threshold
    return False


def describe(rule: AlertRule, result: HealthProbeResult) -> str:
    if rule.alert_type == AlertType.SERVICE_DOWN:
        return f"{result.service} is down: {result.error_message or 'no detail'}"
    if rule.alert_type == AlertType.SLOW_RESPONSE:
        return f"{result.service} responded in {result.response_time:.0f}ms (threshold {rule.effective_threshold:.0f}ms)"
    return f"{result.service} quota at {result.quota_percent:.1f}% (threshold {rule.effective_threshold:.0f}%)"


class AlertSink(ABC):
    """Receives triggered alerts."""

    @abstractmethod
    async def deliver(self, alert: TriggeredAlert) -> None:
        pass


class AlertEvaluator:
    """
    Evaluates alert rules against every probe result.

    Example:
        evaluator = AlertEvaluator()
        evaluator.add_rule(AlertRule("stripe", AlertType.SERVICE_DOWN))
        evaluator.add_rule(AlertRule("anthropic", AlertType.SLOW_RESPONSE, threshold=3000))

        fired = evaluator.evaluate(result)      # bookkeeping only
        fired = await evaluator.process(result)  # bookkeeping + delivery
    """

    def __init__(
        self,
        rules: Optional[List[AlertRule]] = None,
        sinks: Optional[List[AlertSink]] = None,
        history_size: int = 500,
        observer: Optional[EventObserver] = None,
    ):
        self._observer = observer
        self._rules: List[AlertRule] = list(rules or [])
        self._sinks: List[AlertSink] = list(sinks or [])
        self._history: Deque[TriggeredAlert] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def add_rule(self, rule: AlertRule) -> AlertRule:
        with self._lock:
            self._rules.append(rule)
        return rule

    def add_sink(self, sink: AlertSink):
        self._sinks.append(sink)

    @property
    def rules(self) -> List[AlertRule]:
        with self._lock:
            return list(self._rules)

    def rules_for(self, service: str) -> List[AlertRule]:
        """Active rules matching ``service``."""
        with self._lock:
            return [r for r in self._rules if r.service == service and r.is_active]

    @property
    def history(self) -> List[TriggeredAlert]:
        """Recent firings, newest last."""
        with self._lock:
            return list(self._history)

    def evaluate(self, result: HealthProbeResult) -> List[TriggeredAlert]:
        """Fire every matching active rule and update its bookkeeping."""
        fired: List[TriggeredAlert] = []
        now = time.time()

        with self._lock:
            for rule in self._rules:
                if not rule.is_active or rule.service != result.service:
                    continue
                if not should_trigger(rule, result):
                    continue

                rule.notifications_sent += 1
                rule.last_triggered = now
                alert = TriggeredAlert(
                    service=rule.service,
                    alert_type=rule.alert_type,
                    timestamp=now,
                    message=describe(rule, result),
                )
                self._history.append(alert)
                fired.append(alert)

        for alert in fired:
            logger.warning(f"Alert triggered: {alert.service} - {alert.alert_type.value}")
            emit_safely(self._observer, ResilienceEvent(
                kind=EventKind.ALERT_TRIGGERED,
                operation=alert.service,
                outcome=alert.alert_type.value,
                error=alert.message,
            ))
        return fired

    async def process(self, result: HealthProbeResult) -> List[TriggeredAlert]:
        """Evaluate and hand every firing to the sinks; sink errors are logged."""
        fired = self.evaluate(result)
        for alert in fired:
            for sink in self._sinks:
                try:
                    await sink.deliver(alert)
                except Exception as e:
                    logger.error(f"Alert sink {type(sink).__name__} failed: {e}")
        return fired


@dataclass
class AlertResult:
    """Result of sending an alert."""
    success: bool
    channel: str
    error: Optional[str] = None


class AlertChannel(ABC):
    """Abstract alert channel."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Channel name."""
        pass

    @abstractmethod
    async def send(self, alert: TriggeredAlert) -> AlertResult:
        """Send alert to channel."""
        pass


class LogChannel(AlertChannel):
    """Writes alerts to the application log."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    @property
    def name(self) -> str:
        return "log"

    async def send(self, alert: TriggeredAlert) -> AlertResult:
        self._log.warning(f"[ALERT] {alert.alert_type.value}: {alert.message}")
        return AlertResult(success=True, channel=self.name)


class WebhookChannel(AlertChannel):
    """
    Generic webhook alert channel.

    Example:
        channel = WebhookChannel(
            url="https://ops.example.com/alerts",
            headers={"Authorization": "Bearer token"},
        )
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize webhook channel."""
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._client = client

    @property
    def name(self) -> str:
        return "webhook"

    def _payload(self, alert: TriggeredAlert) -> Dict[str, Any]:
        return alert.to_dict()

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.url, json=payload, headers=self.headers, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(self.url, json=payload, headers=self.headers, timeout=self.timeout)

    async def send(self, alert: TriggeredAlert) -> AlertResult:
        """Send alert to webhook."""
        try:
            response = await self._post(self._payload(alert))
        except httpx.HTTPError as e:
            return AlertResult(success=False, channel=self.name, error=str(e))

        if response.status_code < 300:
            return AlertResult(success=True, channel=self.name)
        return AlertResult(success=False, channel=self.name, error=f"HTTP {response.status_code}")


class SlackChannel(WebhookChannel):
    """Slack incoming-webhook channel."""

    EMOJI = {
        AlertType.SERVICE_DOWN: ":rotating_light:",
        AlertType.SLOW_RESPONSE: ":snail:",
        AlertType.QUOTA_WARNING: ":warning:",
    }

    def __init__(self, webhook_url: str, channel: Optional[str] = None, username: str = "Service Alerts", **kwargs):
        super().__init__(webhook_url, **kwargs)
        self.channel = channel
        self.username = username

    @property
    def name(self) -> str:
        return "slack"

    def _payload(self, alert: TriggeredAlert) -> Dict[str, Any]:
        emoji = self.EMOJI.get(alert.alert_type, ":bell:")
        payload: Dict[str, Any] = {
            "username": self.username,
            "text": f"{emoji} *{alert.service}* {alert.alert_type.value}: {alert.message}",
        }
        if self.channel:
            payload["channel"] = self.channel
        return payload


class AlertDispatcher(AlertSink):
    """
    Delivers triggered alerts to channels with cooldown and rate limiting.

    Detection fires every cycle; this keeps recipients from being paged
    every 30 seconds for the same outage.
    """

    def __init__(
        self,
        channels: Optional[List[AlertChannel]] = None,
        cooldown_seconds: float = 900.0,
        rate_limit_per_minute: int = 30,
    ):
        """
        Initialize dispatcher.

        Args:
            channels: Delivery channels
            cooldown_seconds: Minimum gap between deliveries of the same alert
            rate_limit_per_minute: Max deliveries per minute across all alerts
        """
        self._channels: Dict[str, AlertChannel] = {c.name: c for c in (channels or [])}
        self.cooldown_seconds = cooldown_seconds
        self.rate_limit = rate_limit_per_minute

        self._last_sent: Dict[str, float] = {}
        self._sent_count = 0
        self._sent_window_start = time.time()
        self.suppressed = 0

    def add_channel(self, channel: AlertChannel):
        """Add an alert channel."""
        self._channels[channel.name] = channel

    def _in_cooldown(self, alert: TriggeredAlert) -> bool:
        last = self._last_sent.get(alert.fingerprint)
        return last is not None and alert.timestamp - last < self.cooldown_seconds

    def _check_rate_limit(self) -> bool:
        """Check if rate limit exceeded."""
        now = time.time()
        if now - self._sent_window_start > 60:
            self._sent_count = 0
            self._sent_window_start = now

        if self._sent_count >= self.rate_limit:
            return False

        self._sent_count += 1
        return True

    async def deliver(self, alert: TriggeredAlert) -> None:
        if self._in_cooldown(alert):
            self.suppressed += 1
            logger.debug(f"Alert in cooldown: {alert.fingerprint}")
            return

        if not self._check_rate_limit():
            self.suppressed += 1
            logger.warning("Alert rate limit exceeded")
            return

        self._last_sent[alert.fingerprint] = alert.timestamp
        channels = list(self._channels.values())
        results = await asyncio.gather(*(c.send(alert) for c in channels), return_exceptions=True)
        for channel, result in zip(channels, results):
            if isinstance(result, Exception):
                logger.error(f"Alert send failed to {channel.name}: {type(result).__name__}: {result}")
            elif not result.success:
                logger.error(f"Alert send failed to {result.channel}: {result.error}")


def create_alert_dispatcher(
    webhook_url: Optional[str] = None,
    slack_webhook: Optional[str] = None,
    **kwargs,
) -> AlertDispatcher:
    """
    Create a dispatcher with the log channel plus any configured webhooks.

    Convenience function for quick setup.
    """
    dispatcher = AlertDispatcher(channels=[LogChannel()], **kwargs)
    if webhook_url:
        dispatcher.add_channel(WebhookChannel(url=webhook_url))
    if slack_webhook:
        dispatcher.add_channel(SlackChannel(webhook_url=slack_webhook))
    return dispatcher


# Export public API
__all__ = [
    'AlertType',
    'AlertRule',
    'TriggeredAlert',
    'AlertSink',
    'AlertEvaluator',
    'AlertResult',
    'AlertChannel',
    'LogChannel',
    'WebhookChannel',
    'SlackChannel',
    'AlertDispatcher',
    'create_alert_dispatcher',
    'should_trigger',
]
