"""Rate limit counters.

Tracks checks and denials per policy so attack bursts show up on the
dashboards, and renders them as Prometheus text.
"""

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class PolicyCounters:
    checks: int = 0
    blocks: int = 0


@dataclass
class RateLimitMetrics:
    """Collects per-policy check and denial counts.

    Safe to share between concurrent requests on one event loop.
    """

    _policies: Dict[str, PolicyCounters] = field(
        default_factory=lambda: defaultdict(PolicyCounters)
    )
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _start_time: float = field(default_factory=time.time)

    async def record_check(self, policy: str, allowed: bool) -> None:
        """Record one gate decision.

        Args:
            policy: Policy name
            allowed: Whether the check was allowed
        """
        async with self._lock:
            counters = self._policies[policy]
            counters.checks += 1
            if not allowed:
                counters.blocks += 1

    async def get_summary(self) -> Dict[str, Any]:
        async with self._lock:
            total_checks = sum(c.checks for c in self._policies.values())
            total_blocks = sum(c.blocks for c in self._policies.values())
            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "total_checks": total_checks,
                "total_blocks": total_blocks,
                "block_rate": round(total_blocks / total_checks, 4)
                if total_checks > 0
                else 0,
                "policies": {
                    name: {"checks": c.checks, "blocks": c.blocks}
                    for name, c in self._policies.items()
                },
            }

    async def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        async with self._lock:
            lines = []

            lines.append("# HELP izibrokerz_rate_limit_checks_total Total rate limit checks")
            lines.append("# TYPE izibrokerz_rate_limit_checks_total counter")
            for name, counters in self._policies.items():
                lines.append(
                    f'izibrokerz_rate_limit_checks_total{{policy="{name}"}} {counters.checks}'
                )

            lines.append(
                "\n# HELP izibrokerz_rate_limit_blocks_total Total rate limit denials"
            )
            lines.append("# TYPE izibrokerz_rate_limit_blocks_total counter")
            for name, counters in self._policies.items():
                lines.append(
                    f'izibrokerz_rate_limit_blocks_total{{policy="{name}"}} {counters.blocks}'
                )

            lines.append("\n# HELP izibrokerz_uptime_seconds Service uptime in seconds")
            lines.append("# TYPE izibrokerz_uptime_seconds gauge")
            lines.append(
                f"izibrokerz_uptime_seconds {round(time.time() - self._start_time, 2)}"
            )

            return "\n".join(lines) + "\n"
