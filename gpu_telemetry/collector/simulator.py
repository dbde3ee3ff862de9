#!/usr/bin/env python3
"""
GPU Telemetry Collector (simulated)
===================================
Polls every node on a fixed interval and publishes one message per GPU to the
telemetry topic. Readings are simulated with DGX/A100-like ranges; a real
deployment would scrape the node's DCGM exporter instead.

Message key is "{node_id}-gpu-{gpu_index}" so a GPU's samples stay on one
partition.

Signals:
    SIGTERM / SIGINT → finish the current cycle, flush, exit
"""
from __future__ import annotations

import logging
import random
import signal
import threading
import time
from datetime import datetime, timezone
from typing import Any, Sequence

from confluent_kafka import KafkaException, Producer

from gpu_telemetry.alert_engine.config import EngineConfig
from gpu_telemetry.alert_engine.logs import setup_logging
from gpu_telemetry.alert_engine.models import MetricSample

logger = logging.getLogger("gpu_telemetry.collector")

MEMORY_TOTAL_MB = 80000.0  # 80GB A100


def simulate_node(node_id: str, gpus: int = 8, rng: random.Random | None = None) -> list[MetricSample]:
    """One simulated reading for each GPU of a node."""
    rng = rng or random.Random()
    now = datetime.now(timezone.utc)
    samples = []
    for i in range(gpus):
        samples.append(MetricSample(
            node_id=node_id,
            gpu_index=i,
            temperature_c=65.0 + rng.random() * 30.0,
            power_w=250.0 + rng.random() * 100.0,
            mem_used_mb=MEMORY_TOTAL_MB * (0.3 + rng.random() * 0.6),
            mem_total_mb=MEMORY_TOTAL_MB,
            utilization_pct=rng.random() * 100.0,
            clock_mhz=1410 + rng.randrange(200),
            collected_at=now,
        ))
    return samples


class TelemetryCollector:
    def __init__(
        self,
        producer: Any,
        nodes: Sequence[str],
        topic: str = "gpu-telemetry",
        gpus_per_node: int = 8,
        interval_s: float = 30.0,
        rng: random.Random | None = None,
    ) -> None:
        self._producer = producer
        self._nodes = list(nodes)
        self._topic = topic
        self._gpus = gpus_per_node
        self._interval_s = interval_s
        self._rng = rng or random.Random()
        self._stop = threading.Event()

    def publish(self, samples: list[MetricSample]) -> None:
        for s in samples:
            self._producer.produce(
                self._topic,
                key=s.message_key().encode("utf-8"),
                value=s.to_payload(),
                timestamp=int(s.collected_at.timestamp() * 1000),
            )
        self._producer.poll(0)

    def collect_once(self) -> int:
        """Collect from every node; returns the number of published samples."""
        published = 0
        for node_id in self._nodes:
            samples = simulate_node(node_id, self._gpus, self._rng)
            try:
                self.publish(samples)
            except (KafkaException, BufferError) as e:
                logger.error("Error publishing metrics from %s: %s", node_id, e)
                continue
            published += len(samples)
            logger.info("Published %d metrics from %s", len(samples), node_id)
        return published

    def run(self) -> None:
        logger.info("Starting collector service, polling %d nodes every %.0fs",
                    len(self._nodes), self._interval_s)
        try:
            while not self._stop.is_set():
                cycle_start = time.monotonic()
                self.collect_once()
                elapsed = time.monotonic() - cycle_start
                self._stop.wait(max(0.0, self._interval_s - elapsed))
        finally:
            remaining = self._producer.flush(5.0)
            if remaining:
                logger.warning("%d messages still undelivered at shutdown", remaining)
            logger.info("Collector service stopped")

    def stop(self) -> None:
        self._stop.set()


def main() -> None:
    cfg = EngineConfig.from_env()
    log = setup_logging(cfg, "collector")
    producer = Producer({"bootstrap.servers": cfg.kafka_brokers, "acks": 1, "linger.ms": 10})
    collector = TelemetryCollector(
        producer, cfg.collector_nodes, topic=cfg.kafka_topic,
        gpus_per_node=cfg.gpus_per_node, interval_s=cfg.collect_interval_s,
    )

    def _handle_signal(signum: int, frame: Any) -> None:
        log.info("Received signal %d — shutting down", signum)
        collector.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    collector.run()


if __name__ == "__main__":
    main()
