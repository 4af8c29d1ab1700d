"""Named rate limit policies.

Calibration favours real users: generous point budgets, short cooldowns.
Policies are plain data; the gate accepts any table built with
``build_policy_table`` so tests never depend on the production constants.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping

from izibrokerz.app.exceptions import UnknownPolicyError


@dataclass(frozen=True)
class RateLimitPolicy:
    """Immutable limiter configuration.

    Attributes:
        name: Registry key, also part of every bucket key
        capacity: Points granted per rolling window
        window_seconds: Length of the rolling window
        cooldown_seconds: Block imposed by the denial that finds the window
            exhausted (0 = no block, wait for the window to slide)
    """
    name: str
    capacity: int
    window_seconds: int
    cooldown_seconds: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("policy name must not be empty")
        if self.capacity < 1:
            raise ValueError("capacity must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must not be negative")

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "capacity": self.capacity,
            "window_seconds": self.window_seconds,
            "cooldown_seconds": self.cooldown_seconds,
        }


# Login: a user may mistype a password a few times; 10 in 5 minutes is suspicious
LOGIN_POLICY = RateLimitPolicy("login", capacity=10, window_seconds=300, cooldown_seconds=60)

# Signup and generic forms: validation errors (CPF, email) force resubmits
FORM_POLICY = RateLimitPolicy("form", capacity=5, window_seconds=600, cooldown_seconds=120)

# Property listing form: uploads fail and validation rejects, leave margin
PROPERTY_FORM_POLICY = RateLimitPolicy(
    "property_form", capacity=10, window_seconds=300, cooldown_seconds=60
)

# AI assistant: a natural conversation produces bursts of messages
AI_POLICY = RateLimitPolicy("ai", capacity=20, window_seconds=60, cooldown_seconds=30)


def build_policy_table(*policies: RateLimitPolicy) -> Mapping[str, RateLimitPolicy]:
    """Build a read-only name -> policy table.

    Raises:
        ValueError: If two policies share a name
    """
    table: dict[str, RateLimitPolicy] = {}
    for policy in policies:
        if policy.name in table:
            raise ValueError(f"duplicate policy name: {policy.name}")
        table[policy.name] = policy
    return MappingProxyType(table)


DEFAULT_POLICIES = build_policy_table(
    LOGIN_POLICY, FORM_POLICY, PROPERTY_FORM_POLICY, AI_POLICY
)


def get_policy(
    name: str, table: Mapping[str, RateLimitPolicy] = DEFAULT_POLICIES
) -> RateLimitPolicy:
    """Look up a policy by name.

    Raises:
        UnknownPolicyError: If the name is not in the table
    """
    try:
        return table[name]
    except KeyError:
        raise UnknownPolicyError(name) from None
