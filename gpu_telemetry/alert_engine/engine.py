"""Alert engine — consumes GPU telemetry from Kafka and drives alerting.

Per event: decode → store metric → evaluate rules → (create alert → dispatch
action) per candidate → commit offset.

The offset is committed only once every candidate of the event has been
attempted, so delivery is at-least-once: a crash before the commit replays the
whole event and produces duplicate alerts. Malformed payloads are committed
and dropped. Cancellation is checked between events, never mid-event.
"""
from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import Any, Callable, Protocol

from confluent_kafka import Consumer, KafkaError, KafkaException, Message

from .config import EngineConfig
from .dispatcher import ActionDispatcher, UnhandledSeverityError
from .logs import setup_logging
from .models import AlertCandidate, EventState, MetricDecodeError, MetricSample, ProcessingOutcome
from .rules import evaluate
from .store import StoreError, TelemetryStore

logger = logging.getLogger("gpu_telemetry.engine")


class QueueMessage(Protocol):
    def value(self) -> bytes | None: ...


class MessageSource(Protocol):
    def poll(self, timeout: float) -> QueueMessage | None: ...

    def commit(self, message: QueueMessage) -> None: ...

    def close(self) -> None: ...


class KafkaMessageSource:
    """Single consumer on the telemetry topic with manual offset commits."""

    def __init__(self, cfg: EngineConfig, consumer: Consumer | None = None) -> None:
        self._consumer = consumer or Consumer({
            "bootstrap.servers": cfg.kafka_brokers,
            "group.id": cfg.kafka_group_id,
            "enable.auto.commit": False,
            "auto.offset.reset": cfg.kafka_offset_reset,
        })
        self._consumer.subscribe([cfg.kafka_topic])
        logger.info("Subscribed to %s as group %s via %s",
                    cfg.kafka_topic, cfg.kafka_group_id, cfg.kafka_brokers)

    def poll(self, timeout: float) -> Message | None:
        msg = self._consumer.poll(timeout)
        if msg is None:
            return None
        err = msg.error()
        if err is not None:
            if err.code() != KafkaError._PARTITION_EOF:
                logger.error("Error fetching message: %s", err)
            return None
        return msg

    def commit(self, message: Message) -> None:
        self._consumer.commit(message=message, asynchronous=False)

    def close(self) -> None:
        self._consumer.close()


class AlertEngine:
    def __init__(
        self,
        source: MessageSource,
        store: TelemetryStore,
        dispatcher: ActionDispatcher,
        evaluator: Callable[[MetricSample], list[AlertCandidate]] = evaluate,
        poll_timeout_s: float = 1.0,
    ) -> None:
        self._source = source
        self._store = store
        self._dispatcher = dispatcher
        self._evaluate = evaluator
        self._poll_timeout_s = poll_timeout_s
        self._stop = threading.Event()
        self.stats: dict[str, int] = {
            "events": 0,
            "dropped": 0,
            "alerts_created": 0,
            "alerts_failed": 0,
            "commit_failures": 0,
        }

    # --- per-event pipeline ---

    def process(self, value: bytes | None) -> ProcessingOutcome:
        """Run one payload through the pipeline, up to (not including) the commit."""
        outcome = ProcessingOutcome()

        try:
            sample = MetricSample.from_payload(value if value is not None else b"")
        except MetricDecodeError as e:
            logger.warning("Dropping malformed telemetry event: %s", e)
            outcome.dropped = True
            return outcome
        outcome.sample = sample

        try:
            self._store.store_metric(sample)
            outcome.metric_stored = True
        except StoreError as e:
            logger.error("Error storing metric %s: %s", sample.message_key(), e)
        outcome.state = EventState.METRIC_STORED

        candidates = self._evaluate(sample)
        outcome.state = EventState.EVALUATED

        for candidate in candidates:
            alert_id = self._handle_candidate(candidate)
            if alert_id is None:
                outcome.failed_candidates += 1
            else:
                outcome.alert_ids.append(alert_id)
        outcome.state = EventState.ALERTS_PERSISTED
        return outcome

    def _handle_candidate(self, candidate: AlertCandidate) -> int | None:
        try:
            alert_id = self._store.create_alert(candidate)
        except StoreError as e:
            logger.error("Error creating %s alert for %s GPU %d: %s", candidate.alert_type.value,
                         candidate.node_id, candidate.gpu_index, e)
            return None
        try:
            alert = self._store.get_alert(alert_id)
        except StoreError as e:
            logger.error("Error reading back alert %d: %s", alert_id, e)
            return None
        try:
            self._dispatcher.dispatch(alert_id, alert)
        except UnhandledSeverityError as e:
            # code-level mismatch between rules and dispatcher, not an environment issue
            logger.critical("Contract violation dispatching alert %d: %s", alert_id, e)
            return None
        except Exception:
            logger.exception("Unexpected error dispatching alert %d", alert_id)
            return None
        return alert_id

    def handle(self, message: QueueMessage) -> ProcessingOutcome:
        """Process one dequeued message and commit it."""
        outcome = self.process(message.value())
        self.stats["events"] += 1
        self.stats["dropped"] += int(outcome.dropped)
        self.stats["alerts_created"] += len(outcome.alert_ids)
        self.stats["alerts_failed"] += outcome.failed_candidates
        try:
            self._source.commit(message)
        except KafkaException as e:
            # the event will be redelivered
            self.stats["commit_failures"] += 1
            logger.error("Failed to commit offset: %s", e)
            outcome.state = EventState.ABANDONED
            return outcome
        outcome.state = EventState.COMMITTED
        return outcome

    # --- loop ---

    def run(self) -> None:
        logger.info("Alert Engine started, consuming telemetry...")
        try:
            while not self.stopping:
                msg = self._source.poll(self._poll_timeout_s)
                if msg is None:
                    continue
                self.handle(msg)
        finally:
            logger.info("Alert Engine shutting down — %s", self.stats)
            self._source.close()
            self._store.close()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()


def build_engine(cfg: EngineConfig, source: MessageSource | None = None) -> AlertEngine:
    store = TelemetryStore(cfg.db_path)
    dispatcher = ActionDispatcher(store, channel=cfg.notify_channel,
                                  webhook_url=cfg.notify_webhook_url, timeout_s=cfg.notify_timeout_s)
    return AlertEngine(source or KafkaMessageSource(cfg), store, dispatcher,
                       poll_timeout_s=cfg.poll_timeout_s)


def main() -> None:
    try:
        cfg = EngineConfig.from_env()
    except RuntimeError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    log = setup_logging(cfg, "alert_engine")
    engine = build_engine(cfg)

    def _handle_signal(signum: int, frame: Any) -> None:
        log.info("Received signal %d — finishing in-flight event", signum)
        engine.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    engine.run()


if __name__ == "__main__":
    main()
