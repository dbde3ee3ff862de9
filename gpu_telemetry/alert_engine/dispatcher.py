"""Action dispatcher — maps alert severity to an automated remediation.

critical → workload_migration: node marked degraded, migration requested
warning  → notification: message sent to the configured channel

The policy table is closed over Severity; a severity without a policy is a
contract error and raises UnhandledSeverityError before any side effect.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Union

import requests

from .models import (
    ActionRecord,
    ActionStatus,
    ActionType,
    Alert,
    AlertCandidate,
    NodeStatus,
    Severity,
)
from .store import StoreError, TelemetryStore

logger = logging.getLogger("gpu_telemetry.dispatcher")

AlertLike = Union[Alert, AlertCandidate]


class UnhandledSeverityError(Exception):
    """An alert reached the dispatcher with a severity that has no action policy."""

    def __init__(self, severity: Any, alert_id: int | None = None) -> None:
        super().__init__(f"No action policy for severity {severity!r} (alert {alert_id})")
        self.severity = severity
        self.alert_id = alert_id


@dataclass(frozen=True)
class ActionPolicy:
    action_type: ActionType
    execute: Callable[["ActionDispatcher", AlertLike], tuple[dict[str, Any], bool]]


def _migrate_workloads(dispatcher: ActionDispatcher, alert: AlertLike) -> tuple[dict[str, Any], bool]:
    details = {
        "action": "migrate_workloads",
        "from_node": alert.node_id,
        "from_gpu": alert.gpu_index,
        "reason": alert.message,
    }
    ok = dispatcher._mark_degraded(alert.node_id)
    logger.warning("CRITICAL ACTION: Initiating workload migration from %s GPU %d",
                   alert.node_id, alert.gpu_index)
    return details, ok


def _notify(dispatcher: ActionDispatcher, alert: AlertLike) -> tuple[dict[str, Any], bool]:
    details = {
        "action": "send_notification",
        "channel": dispatcher.channel,
        "message": alert.message,
    }
    alert_type = getattr(alert.alert_type, "value", alert.alert_type)
    logger.warning("WARNING: Sending notification for %s on %s GPU %d",
                   alert_type, alert.node_id, alert.gpu_index)
    return details, dispatcher._send_notification(alert, details)


POLICIES: dict[Severity, ActionPolicy] = {
    Severity.CRITICAL: ActionPolicy(ActionType.WORKLOAD_MIGRATION, _migrate_workloads),
    Severity.WARNING: ActionPolicy(ActionType.NOTIFICATION, _notify),
}

_unmapped = set(Severity) - set(POLICIES)
if _unmapped:
    raise RuntimeError(f"Severities without an action policy: {sorted(s.value for s in _unmapped)}")


class ActionDispatcher:
    def __init__(
        self,
        store: TelemetryStore,
        channel: str = "slack",
        webhook_url: str = "",
        timeout_s: float = 10.0,
    ) -> None:
        self._store = store
        self.channel = channel
        self._webhook_url = webhook_url
        self._timeout_s = timeout_s

    @staticmethod
    def policy_for(severity: Any, alert_id: int | None = None) -> ActionPolicy:
        try:
            sev = Severity(severity)
        except ValueError:
            raise UnhandledSeverityError(severity, alert_id) from None
        policy = POLICIES.get(sev)
        if policy is None:
            raise UnhandledSeverityError(severity, alert_id)
        return policy

    def dispatch(self, alert_id: int, alert: AlertLike) -> ActionRecord:
        """Run the remediation for one alert, then record what was done.

        The side effect always happens before bookkeeping. If the action row
        cannot be written the failure is logged and the returned record has
        no id; the side effect is not rolled back.
        """
        policy = self.policy_for(alert.severity, alert_id)
        details, ok = policy.execute(self, alert)
        status = ActionStatus.EXECUTED if ok else ActionStatus.FAILED

        try:
            return self._store.record_action(alert_id, policy.action_type, status, details)
        except StoreError:
            logger.exception("Failed to record %s action for alert %d", policy.action_type.value, alert_id)
            return ActionRecord(alert_id=alert_id, action_type=policy.action_type,
                                action_status=status, action_details=details)

    # --- side effects ---

    def _mark_degraded(self, node_id: str) -> bool:
        try:
            updated = self._store.set_node_status(node_id, NodeStatus.DEGRADED)
        except StoreError:
            logger.exception("Failed to update node status for %s", node_id)
            return False
        if not updated:
            logger.warning("Node %s not registered, status not changed", node_id)
        return updated

    def _send_notification(self, alert: AlertLike, details: dict[str, Any]) -> bool:
        if not self._webhook_url:
            return True
        severity = getattr(alert.severity, "value", alert.severity)
        text = f"[{str(severity).upper()}] {alert.node_id} GPU {alert.gpu_index}: {alert.message}"
        try:
            resp = requests.post(
                self._webhook_url,
                json={"text": text, "channel": details["channel"], "details": details},
                timeout=self._timeout_s,
            )
        except requests.RequestException as e:
            logger.error("Notification send failed: %s", e)
            return False
        if not resp.ok:
            logger.error("Notification webhook returned HTTP %d", resp.status_code)
            return False
        return True
