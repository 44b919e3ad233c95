"""
Pattern matching for handler matchers.

A matcher is a case-sensitive regular expression searched for inside the
event's match field ("Edit|Write" matches "Edit", "NotebookEdit" and "Write").
An empty or "*" matcher matches every occurrence. Patterns are compiled once
and cached; compilation failures surface at registration as MatchCompileError.
"""

import re
from functools import lru_cache
from typing import Optional, Pattern

from .models import MatchCompileError

WILDCARD_PATTERNS = frozenset({"", "*"})


def is_wildcard(pattern: Optional[str]) -> bool:
    return pattern is None or pattern.strip() in WILDCARD_PATTERNS


@lru_cache(maxsize=1024)
def compile_matcher(pattern: Optional[str]) -> Optional[Pattern[str]]:
    """
    Compile a matcher pattern.

    Returns:
        The compiled regex, or None for a wildcard matcher

    Raises:
        MatchCompileError: the pattern is not a valid regular expression
    """
    if is_wildcard(pattern):
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        raise MatchCompileError(pattern, str(e)) from e


def matches(pattern: Optional[str], match_value: Optional[str], has_match_field: bool = True) -> bool:
    """
    Evaluate whether a matcher selects an occurrence.

    Args:
        pattern: The handler's matcher
        match_value: The occurrence's match field value (may be None)
        has_match_field: False for kinds that always fire

    Returns:
        True when the handler applies to the occurrence
    """
    if not has_match_field:
        return True

    compiled = compile_matcher(pattern)
    if compiled is None:
        return True
    if match_value is None:
        return False
    return compiled.search(match_value) is not None
