"""Virtual user behaviours and the dispatch table that selects them.

A behaviour is an ``async def behaviour(ctx)`` coroutine that runs one
iteration for one worker. New behaviours are added by extending
:class:`BehaviorKind` and :data:`DEFAULT_BEHAVIORS`; the pool never switches
on kinds itself.
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

from loadgate.executor import RequestExecutor
from loadgate.metrics import MetricRegistry
from loadgate.models import ConfigurationError, RequestResult, RunConfig, ThinkTime

logger = logging.getLogger(__name__)

SELECTION_MODES = ("round-robin", "weighted")
QUOTE_LENGTH = "quote_length"


class BehaviorKind(str, Enum):
    CASUAL = "casual"
    ACTIVE = "active"
    POWER = "power"
    BACKGROUND = "background"
    API = "api"


BehaviorFn = Callable[["IterationContext"], Awaitable[None]]


@dataclass(frozen=True)
class Behavior:
    kind: BehaviorKind
    fn: BehaviorFn
    weight: float = 1.0
    think_time: Optional[ThinkTime] = None  # falls back to the run's think time


def draw_think_time(think: ThinkTime, rng: random.Random) -> float:
    """Uniform draw between min and max, then +/- jitter, never negative."""
    base = rng.uniform(think.min_seconds, think.max_seconds)
    if think.jitter:
        base += base * think.jitter * (rng.random() - 0.5) * 2
    return max(0.0, base)


async def sleep_unless(event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; return False if ``event`` fired first."""
    if seconds <= 0:
        # still a suspension point, so zero think time cannot starve the loop
        await asyncio.sleep(0)
        return not event.is_set()
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return True
    return False


class IterationContext:
    """Everything a behaviour needs for one iteration.

    Samples go to the worker's local registry shard; the pool merges the
    shard into the run registry when the iteration ends.
    """

    def __init__(
        self,
        registry: MetricRegistry,
        executor: RequestExecutor,
        config: RunConfig,
        worker_id: int,
        iteration: int,
        behavior: str,
        rng: random.Random,
        stop_event: asyncio.Event,
        phase_of: Callable[[], str],
        think_time: Optional[ThinkTime] = None,
    ):
        self.registry = registry
        self.executor = executor
        self.config = config
        self.worker_id = worker_id
        self.iteration = iteration
        self.behavior = behavior
        self.rng = rng
        self.stop_event = stop_event
        self._phase_of = phase_of
        self.think_time = think_time
        self._endpoints = config.endpoint_map

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def tags(self, **extra) -> Dict[str, str]:
        tags = {"phase": self._phase_of(), "behavior": self.behavior}
        tags.update({k: str(v) for k, v in extra.items()})
        return tags

    def url_for(self, endpoint: str) -> str:
        path = self._endpoints.get(endpoint, endpoint)
        if path.startswith(("http://", "https://")):
            return path
        return self.config.base_url.rstrip("/") + "/" + path.lstrip("/")

    async def request(
        self,
        method: str,
        endpoint: str,
        name: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> RequestResult:
        """Issue one request through the executor and record its samples."""
        url = self.url_for(endpoint)
        start = time.perf_counter()
        try:
            result = await self.executor.execute(
                method, url, headers=headers, body=body, timeout=self.config.request_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            result = RequestResult(
                status=0,
                latency_ms=(time.perf_counter() - start) * 1000.0,
                error=f"{exc.__class__.__name__}: {exc}",
            )
        if result.error:
            logger.debug("%s %s failed: %s", method, url, result.error)

        tags = self.tags(method=method.upper(), name=name or endpoint, status=result.status)
        now = time.time()
        add = self.registry.add
        add("http_reqs", 1, timestamp=now, **tags)
        add("http_req_duration", result.latency_ms, timestamp=now, **tags)
        add("http_req_failed", not result.ok, timestamp=now, **tags)
        add("data_received", result.bytes_received, timestamp=now, **tags)
        add("data_sent", result.bytes_sent, timestamp=now, **tags)
        return result

    async def get(self, endpoint: str, name: Optional[str] = None) -> RequestResult:
        return await self.request("GET", endpoint, name=name)

    def check(self, name: str, ok: bool) -> bool:
        self.registry.add("checks", bool(ok), timestamp=time.time(), **self.tags(check=name))
        return bool(ok)

    def validate(
        self,
        result: RequestResult,
        expected_status: int = 200,
        max_response_ms: Optional[float] = None,
    ) -> bool:
        ok = self.check(f"status is {expected_status}", result.status == expected_status)
        if max_response_ms is not None:
            ok = self.check(
                f"response time < {max_response_ms:g}ms", result.latency_ms < max_response_ms
            ) and ok
        return ok

    def add(self, metric: str, value: float, /, **tags) -> bool:
        """Record a custom sample, tagged like the built-in ones."""
        return self.registry.add(metric, value, timestamp=time.time(), **self.tags(**tags))

    async def pause(self, seconds: float) -> bool:
        """Yield inside an iteration; returns early (False) when the worker is stopping."""
        return await sleep_unless(self.stop_event, seconds)

    async def think(self, factor: float = 1.0) -> bool:
        think = self.think_time or self.config.think_time
        return await self.pause(draw_think_time(think, self.rng) * factor)


# -- built-in behaviours ---------------------------------------------------------


def record_quote_length(ctx: IterationContext, result: RequestResult) -> None:
    """Record the served quote's length when the run declares ``quote_length``."""
    if not result.ok or ctx.registry.kind(QUOTE_LENGTH) is None:
        return
    try:
        length = len(json.loads(result.body)["text"])
    except (TypeError, ValueError, KeyError):
        return
    ctx.add(QUOTE_LENGTH, length, endpoint="random_quote")


async def casual(ctx: IterationContext) -> None:
    """Light usage: the front page, then one random quote."""
    page = await ctx.get("frontend")
    ctx.validate(page, max_response_ms=3000)
    if not await ctx.think(0.5):
        return
    quote = await ctx.get("random_quote")
    ctx.validate(quote, max_response_ms=2000)
    record_quote_length(ctx, quote)


async def active(ctx: IterationContext) -> None:
    """Moderate usage: two to four browsing actions."""
    actions = ["frontend", "random_quote", "quotes", "categories"]
    for _ in range(ctx.rng.randint(2, 4)):
        result = await ctx.get(ctx.rng.choice(actions))
        ctx.validate(result, max_response_ms=2500)
        if not await ctx.think(0.25):
            return


async def power(ctx: IterationContext) -> None:
    """Heavy usage: four to eight actions with short pauses."""
    actions = ["quotes", "random_quote", "categories", "frontend"]
    for _ in range(ctx.rng.randint(4, 8)):
        result = await ctx.get(ctx.rng.choice(actions))
        ctx.validate(result, max_response_ms=3000)
        if not await ctx.think(0.1):
            return


async def background(ctx: IterationContext) -> None:
    """Minimal usage: a single health check."""
    health = await ctx.get("health")
    ctx.validate(health, max_response_ms=1000)


async def api(ctx: IterationContext) -> None:
    """API-only client: random quote, full list, health."""
    for endpoint in ("random_quote", "quotes", "health"):
        result = await ctx.get(endpoint)
        ctx.validate(result)
        if endpoint == "random_quote":
            record_quote_length(ctx, result)
        if not await ctx.think(0.1):
            return


DEFAULT_BEHAVIORS: Dict[BehaviorKind, BehaviorFn] = {
    BehaviorKind.CASUAL: casual,
    BehaviorKind.ACTIVE: active,
    BehaviorKind.POWER: power,
    BehaviorKind.BACKGROUND: background,
    BehaviorKind.API: api,
}


class BehaviorTable:
    """Dispatch table from behaviour kind to coroutine, built once per run."""

    def __init__(self, behaviors: Sequence[Behavior], mode: str = "round-robin"):
        if not behaviors:
            raise ConfigurationError("at least one behaviour is required")
        if mode not in SELECTION_MODES:
            raise ConfigurationError(
                f"unknown behaviour selection {mode!r} (expected one of {', '.join(SELECTION_MODES)})"
            )
        if any(b.weight < 0 for b in behaviors):
            raise ConfigurationError("behaviour weights must be >= 0")
        if mode == "weighted" and not any(b.weight > 0 for b in behaviors):
            raise ConfigurationError("weighted selection needs at least one positive weight")
        self.behaviors = tuple(behaviors)
        self.mode = mode
        self._weights = [b.weight for b in self.behaviors]

    def select(self, worker_id: int, rng: random.Random) -> Behavior:
        if self.mode == "round-robin":
            return self.behaviors[worker_id % len(self.behaviors)]
        return rng.choices(self.behaviors, weights=self._weights, k=1)[0]

    @classmethod
    def from_mix(
        cls,
        mix: Mapping[str, float],
        mode: str = "round-robin",
        registry: Optional[Mapping[BehaviorKind, BehaviorFn]] = None,
    ) -> "BehaviorTable":
        table = DEFAULT_BEHAVIORS if registry is None else registry
        behaviors = []
        for name, weight in mix.items():
            try:
                kind = BehaviorKind(name)
            except ValueError:
                raise ConfigurationError(f"unknown behaviour {name!r}") from None
            if kind not in table:
                raise ConfigurationError(f"no implementation registered for behaviour {name!r}")
            behaviors.append(Behavior(kind=kind, fn=table[kind], weight=float(weight)))
        return cls(behaviors, mode=mode)

    @classmethod
    def from_config(cls, config: RunConfig) -> "BehaviorTable":
        return cls.from_mix(dict(config.behavior_mix), mode=config.behavior_selection)
