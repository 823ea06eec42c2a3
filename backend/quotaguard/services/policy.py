"""
Rate rule resolution.

Rules are evaluated by (priority desc, id asc). The first rule that both
targets the caller (by identity class, or by role for role-typed rules)
and whose endpoint pattern matches the path wins.

Patterns are globs: "*" matches any run of characters, everything else
is literal, and the match is anchored at both ends.

Fallback semantics:
  • No matching rule      → built-in defaults for the caller kind.
  • Matched rule, tier None → that tier is unlimited (NOT the default).
  • Matched rule, tier <= 0 → also unlimited; zero never means "block all".
"""

from __future__ import annotations

import functools
import re
from collections.abc import Iterable

from quotaguard.services.records import (
    DefaultLimits,
    IdentityClass,
    Limits,
    RateRule,
    RuleTarget,
)


@functools.lru_cache(maxsize=512)
def compile_pattern(endpoint_pattern: str) -> re.Pattern[str]:
    """Translate a glob endpoint pattern into an anchored regex."""
    parts = (re.escape(part) for part in endpoint_pattern.split("*"))
    return re.compile("^" + ".*".join(parts) + "$", re.DOTALL)


def pattern_matches(endpoint_pattern: str, endpoint: str) -> bool:
    if endpoint_pattern == "*":
        return True
    return compile_pattern(endpoint_pattern).match(endpoint) is not None


def rule_sort_key(rule: RateRule) -> tuple[int, int]:
    return (-rule.priority, rule.id)


def targets_caller(rule: RateRule, identity_class: IdentityClass, role: str | None) -> bool:
    if rule.identifier_type == RuleTarget.ROLE:
        return role is not None and rule.role == role
    return rule.identifier_type.value == identity_class.value


def find_applicable_rule(
    rules: Iterable[RateRule],
    endpoint: str,
    identity_class: IdentityClass,
    role: str | None = None,
) -> RateRule | None:
    """Return the highest-priority active rule for this caller and path."""
    for rule in sorted(rules, key=rule_sort_key):
        if not rule.is_active:
            continue
        if not targets_caller(rule, identity_class, role):
            continue
        if not pattern_matches(rule.endpoint_pattern, endpoint):
            continue
        return rule
    return None


def _positive_or_none(limit: int | None) -> int | None:
    return limit if limit is not None and limit > 0 else None


def resolve_limits(
    rule: RateRule | None,
    identity_class: IdentityClass,
    defaults: DefaultLimits,
) -> Limits:
    """Effective per-tier limits for a resolved (or missing) rule."""
    if rule is None:
        if identity_class == IdentityClass.IP:
            return defaults.anonymous
        return defaults.authenticated

    return Limits(
        per_minute=_positive_or_none(rule.requests_per_minute),
        per_hour=_positive_or_none(rule.requests_per_hour),
        per_day=_positive_or_none(rule.requests_per_day),
    )
