"""User-facing wait-time messages for denied actions."""

import math

DEFAULT_ACTION_LABEL = "esta ação"


def _plural(count: int, singular: str) -> str:
    return f"{count} {singular}{'s' if count > 1 else ''}"


def format_wait_time(ms_before_next: int) -> str:
    """Render a retry delay as whole minutes (>= 60s) or seconds.

    Both units round up, so 90000 ms reads "2 minutos" and 45000 ms
    reads "45 segundos".
    """
    seconds = max(1, math.ceil(ms_before_next / 1000))
    if seconds >= 60:
        return _plural(math.ceil(seconds / 60), "minuto")
    return _plural(seconds, "segundo")


def format_denial_message(ms_before_next: int, action_label: str = DEFAULT_ACTION_LABEL) -> str:
    return (
        f"Por segurança, aguarde {format_wait_time(ms_before_next)} "
        f"antes de tentar {action_label} novamente. 🔒"
    )


def retry_after_seconds(ms_before_next: int) -> int:
    """Whole seconds for a Retry-After header (never below 1)."""
    return max(1, math.ceil(ms_before_next / 1000))
