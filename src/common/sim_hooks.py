"""Per-step callbacks for the simulation driver.

``FlipSim.step`` calls :meth:`SimHooks.run_pre` before its pipeline and
:meth:`SimHooks.run_post` after it, passing the simulation and ``dt``.
Callbacks observe state (frame dumps, probes) and must not resize the
particle store.  A raising callback is logged and the step carries on.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from .debug import dbg

Hook = Callable[[Any, float], None]


@dataclass
class SimHooks:
    pre: Optional[Hook] = None
    post: Optional[Hook] = None
    extra_post: List[Hook] = field(default_factory=list)

    def add_post(self, fn: Hook) -> Hook:
        self.extra_post.append(fn)
        return fn

    def run_pre(self, sim: Any, dt: float) -> None:
        if self.pre is not None:
            _call("pre", self.pre, sim, dt)

    def run_post(self, sim: Any, dt: float) -> None:
        if self.post is not None:
            _call("post", self.post, sim, dt)
        for fn in self.extra_post:
            _call("post", fn, sim, dt)


def _call(stage: str, fn: Hook, sim: Any, dt: float) -> None:
    try:
        fn(sim, dt)
    except Exception:
        dbg("hooks").exception(f"{stage}-step hook {getattr(fn, '__name__', fn)!r} failed")


def every(n: int, fn: Hook) -> Hook:
    """Wrap ``fn`` so it only fires when ``sim.timestep`` is a multiple of ``n``."""
    if n <= 0:
        raise ValueError("n must be positive")

    def hook(sim: Any, dt: float) -> None:
        if sim.timestep % n == 0:
            fn(sim, dt)

    hook.__name__ = f"every_{n}_{getattr(fn, '__name__', 'hook')}"
    return hook


__all__ = ["Hook", "SimHooks", "every"]
