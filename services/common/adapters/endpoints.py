import random
import time
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence


@dataclass
class Endpoint:
    url: str
    failures: int = 0
    unhealthy_until: float = 0.0

    def is_healthy(self, now: float) -> bool:
        return now >= self.unhealthy_until


class SelectionPolicy(Protocol):
    def choose(self, candidates: Sequence[Endpoint]) -> Endpoint: ...


class RandomPolicy:
    """Uniform random choice among candidates."""

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    def choose(self, candidates: Sequence[Endpoint]) -> Endpoint:
        return self._rng.choice(list(candidates))


class RoundRobinPolicy:
    def __init__(self):
        self._next = 0

    def choose(self, candidates: Sequence[Endpoint]) -> Endpoint:
        ep = candidates[self._next % len(candidates)]
        self._next += 1
        return ep


POLICIES = {
    "random": RandomPolicy,
    "round_robin": RoundRobinPolicy,
}


def make_policy(name: str) -> SelectionPolicy:
    try:
        return POLICIES[name]()
    except KeyError:
        raise ValueError(f"unknown RPC node policy {name!r}; expected one of {sorted(POLICIES)}")


class EndpointPool:
    """RPC endpoints with health state.

    A failing endpoint is benched for ``cooldown`` seconds. When every endpoint
    is benched, all of them are offered again rather than failing outright.
    """

    def __init__(
        self,
        urls: Sequence[str],
        policy: SelectionPolicy | None = None,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not urls:
            raise ValueError("EndpointPool needs at least one URL")
        self.endpoints = [Endpoint(u) for u in dict.fromkeys(urls)]
        self._policy = policy or RandomPolicy()
        self._cooldown = cooldown
        self._clock = clock

    def healthy(self) -> list[Endpoint]:
        now = self._clock()
        return [ep for ep in self.endpoints if ep.is_healthy(now)]

    def pick(self, exclude: Sequence[Endpoint] = ()) -> Endpoint:
        candidates = [ep for ep in self.healthy() if ep not in exclude]
        if not candidates:
            candidates = [ep for ep in self.endpoints if ep not in exclude] or list(self.endpoints)
        return self._policy.choose(candidates)

    def mark_failure(self, endpoint: Endpoint) -> None:
        endpoint.failures += 1
        endpoint.unhealthy_until = self._clock() + self._cooldown

    def mark_success(self, endpoint: Endpoint) -> None:
        endpoint.failures = 0
        endpoint.unhealthy_until = 0.0
