"""
Add/remove one address range in a Service's ``loadBalancerSourceRanges``.
"""

from shared.errors import DuplicateRuleError, RuleNotFoundError


def add_source_range(ranges: list[str] | None, iprange: str) -> list[str]:
    """Return a copy of ``ranges`` with ``iprange`` appended at the end."""
    current = list(ranges or [])
    if iprange in current:
        raise DuplicateRuleError(iprange)
    current.append(iprange)
    return current


def remove_source_range(ranges: list[str] | None, iprange: str) -> list[str]:
    """Return a copy of ``ranges`` without ``iprange``; remaining order is kept."""
    current = list(ranges or [])
    if iprange not in current:
        raise RuleNotFoundError(iprange)
    return [r for r in current if r != iprange]
