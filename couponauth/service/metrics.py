from __future__ import annotations

import threading
from collections import defaultdict
from typing import Dict, List, Tuple

from couponauth.storage.models import Role

_COUNTERS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "couponauth_login_attempts_total": ("Login attempts by client type and outcome", ("role", "outcome")),
    "couponauth_account_lockouts_total": ("Accounts locked after repeated failures", ("role",)),
    "couponauth_account_unlocks_total": ("Administrative account unlocks", ("role",)),
    "couponauth_token_refresh_total": ("Refresh token rotations by outcome", ("outcome",)),
    "couponauth_rate_limit_rejections_total": ("Requests rejected by the rate limiter", ("endpoint_class",)),
}


class AuthMetrics:
    """Process-local counters rendered in Prometheus text format."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, Dict[Tuple[str, ...], int]] = defaultdict(lambda: defaultdict(int))

    def _inc(self, name: str, *labels: str) -> None:
        with self._lock:
            self._values[name][labels] += 1

    def record_login(self, role: Role | str, outcome: str) -> None:
        self._inc("couponauth_login_attempts_total", _label(role), outcome)

    def record_lockout(self, role: Role | str) -> None:
        self._inc("couponauth_account_lockouts_total", _label(role))

    def record_unlock(self, role: Role | str) -> None:
        self._inc("couponauth_account_unlocks_total", _label(role))

    def record_refresh(self, outcome: str) -> None:
        self._inc("couponauth_token_refresh_total", outcome)

    def record_rate_limit_rejection(self, endpoint_class) -> None:
        self._inc("couponauth_rate_limit_rejections_total", _label(endpoint_class))

    def value(self, name: str, *labels: str) -> int:
        with self._lock:
            return self._values.get(name, {}).get(tuple(labels), 0)

    def render(self) -> List[str]:
        lines: List[str] = []
        with self._lock:
            snapshot = {name: dict(series) for name, series in self._values.items()}
        for name, (help_text, label_names) in _COUNTERS.items():
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} counter")
            for labels, count in sorted(snapshot.get(name, {}).items()):
                rendered = ",".join(f'{key}="{val}"' for key, val in zip(label_names, labels))
                lines.append(f"{name}{{{rendered}}} {count}")
        return lines


def _label(value) -> str:
    return getattr(value, "value", value)
