"""
engine/engine.py

Runs the applicable detection layers for one event concurrently, bounded
by the per-event deadline.

Each layer's analyze() runs on a worker thread (ThreadPoolExecutor via
loop.run_in_executor) so a slow or stuck layer cannot stall the event
loop. The engine waits until every layer has finished, the deadline has
passed, or the caller's cancel event fires, whichever comes first:

  - finished layers   → their DetectionResult
  - past the deadline → DetectionResult.timeout(): zero score, degraded
  - cancelled         → abandoned: zero score, degraded, run.incomplete

A worker thread that outlives the deadline keeps running to completion,
but its result is discarded once the LayerRun is closed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from ..metrics import METRICS
from ..models import SecurityEvent
from .layers.base import BaseLayer
from .models import DetectionResult

logger = logging.getLogger(__name__)

_SLOW_LAYER_MS = 50.0


@dataclass
class LayerRun:
    """Results collected for one event. Filled in as layers finish."""

    layers: list[BaseLayer] = field(default_factory=list)
    results: dict[str, DetectionResult] = field(default_factory=dict)
    incomplete: bool = False
    closed: bool = False

    def ordered(self) -> list[DetectionResult]:
        """Results in layer order (deterministic), one per applicable layer."""
        return [self.results[layer.name] for layer in self.layers if layer.name in self.results]

    @property
    def degraded_layers(self) -> list[str]:
        return [r.layer for r in self.ordered() if r.degraded]

    def close(self, reason: str, deadline_ms: float) -> None:
        """Fill every missing layer with a degraded placeholder and stop accepting results."""
        for layer in self.layers:
            if layer.name in self.results:
                continue
            if reason == "timeout":
                self.results[layer.name] = DetectionResult.timeout(layer.name, deadline_ms)
                METRICS.layer_timeouts.inc()
                logger.warning(
                    "Layer %r exceeded %.0fms deadline — contributing 0", layer.name, deadline_ms,
                )
            else:
                self.results[layer.name] = DetectionResult(
                    layer=layer.name,
                    error="abandoned: event cancelled",
                    evidence={"degraded": "cancelled"},
                )
                self.incomplete = True
        self.closed = True


class DetectionEngine:
    def __init__(
        self,
        layers: list[BaseLayer],
        max_workers: int = 16,
        slow_layer_ms: float = _SLOW_LAYER_MS,
    ) -> None:
        names = [layer.name for layer in layers]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate layer names: {names}")
        self.layers = list(layers)
        self.slow_layer_ms = slow_layer_ms
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bastion-layer")
        logger.info("DetectionEngine loaded %d layer(s): %s", len(self.layers), names)

    def applicable(self, event: SecurityEvent) -> list[BaseLayer]:
        return [layer for layer in self.layers if layer.enabled and layer.applies_to(event)]

    def get_layer(self, name: str) -> BaseLayer | None:
        return next((layer for layer in self.layers if layer.name == name), None)

    async def run(
        self,
        event: SecurityEvent,
        deadline_ms: float,
        cancel: asyncio.Event | None = None,
        run: LayerRun | None = None,
    ) -> LayerRun:
        """
        Run all applicable layers for *event*.

        Pass your own *run* to keep access to partial results if the
        calling task is cancelled: on CancelledError the run is closed
        (missing layers abandoned, incomplete=True) before re-raising.
        """
        loop = asyncio.get_running_loop()
        run = run if run is not None else LayerRun()
        run.layers = self.applicable(event)
        if not run.layers:
            run.closed = True
            return run

        futures: dict[asyncio.Future, BaseLayer] = {}
        for layer in run.layers:
            fut = loop.run_in_executor(self._pool, self._safe_analyze, layer, event)
            fut.add_done_callback(self._collector(run, layer))
            futures[fut] = layer

        cancel_task = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        deadline = loop.time() + deadline_ms / 1000.0
        pending = set(futures)
        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                waiters = pending | ({cancel_task} if cancel_task else set())
                done, _ = await asyncio.wait(
                    waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    break
                for fut in done & pending:
                    if not fut.cancelled():
                        run.results.setdefault(futures[fut].name, fut.result())
                if cancel_task is not None and cancel_task in done:
                    run.close("cancelled", deadline_ms)
                    return run
                pending -= done
        except asyncio.CancelledError:
            run.close("cancelled", deadline_ms)
            raise
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

        run.close("timeout", deadline_ms)
        return run

    @staticmethod
    def _collector(run: LayerRun, layer: BaseLayer):
        def collect(fut: asyncio.Future) -> None:
            if run.closed or fut.cancelled():
                return
            run.results.setdefault(layer.name, fut.result())
        return collect

    def _safe_analyze(self, layer: BaseLayer, event: SecurityEvent) -> DetectionResult:
        t0 = time.monotonic()
        try:
            result = layer.analyze(event)
        except Exception as exc:
            logger.exception("Layer %r raised an unhandled exception: %s", layer.name, exc)
            METRICS.layer_errors.inc()
            result = DetectionResult.failure(layer.name, exc)
        elapsed_ms = (time.monotonic() - t0) * 1000
        result.elapsed_ms = elapsed_ms
        if elapsed_ms > self.slow_layer_ms:
            logger.warning("Layer %r took %.1fms", layer.name, elapsed_ms)
        return result

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
