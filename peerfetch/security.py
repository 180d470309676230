"""Pre-flight URL policy checks.

Every URL is classified before any network activity takes place. A blocked
URL never reaches the signaling service, so it cannot consume an exit node.

Example:
    ```python
    from peerfetch.security import Blocked, classify

    verdict = classify('https://example.com/setup.exe')
    assert isinstance(verdict, Blocked)
    ```
"""
from __future__ import annotations

import dataclasses
from typing import Tuple
from typing import Union

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import field_validator

DEFAULT_BLOCKED_FRAGMENTS = (
    '.gov.eg',
    '.mil.eg',
    'cbe.org.eg',
    'mod.gov.eg',
    'porn',
    'xxx',
    'darkweb',
)
DEFAULT_BLOCKED_EXTENSIONS = (
    '.exe',
    '.msi',
    '.bat',
    '.cmd',
    '.sh',
    '.php',
    '.pl',
    '.jar',
    '.vbs',
    '.apk',
    '.dmg',
    '.iso',
    '.bin',
    '.dll',
)


class SecurityPolicy(BaseModel):
    """Deny rules applied to every target URL.

    Attributes:
        blocked_fragments: Host fragments and keywords. A URL containing any
            of these (case-insensitive) is blocked.
        blocked_extensions: File extensions. A URL ending with any of these
            (case-insensitive) is blocked.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    blocked_fragments: Tuple[str, ...] = (  # noqa: UP006
        DEFAULT_BLOCKED_FRAGMENTS
    )
    blocked_extensions: Tuple[str, ...] = (  # noqa: UP006
        DEFAULT_BLOCKED_EXTENSIONS
    )

    @field_validator('blocked_fragments', 'blocked_extensions')
    @classmethod
    def _lowercase_rules(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(rule.lower() for rule in v if rule)


DEFAULT_POLICY = SecurityPolicy()


@dataclasses.dataclass(frozen=True)
class Allowed:
    """URL passed every rule."""

    pass


@dataclasses.dataclass(frozen=True)
class Blocked:
    """URL was rejected by a rule.

    Attributes:
        reason: Human readable explanation.
        rule: The fragment or extension that matched.
    """

    reason: str
    rule: str


Verdict = Union[Allowed, Blocked]


def classify(url: str, policy: SecurityPolicy = DEFAULT_POLICY) -> Verdict:
    """Classify a target URL as allowed or blocked.

    Fragment rules are evaluated before extension rules so the content policy
    message wins when a URL matches both.

    Args:
        url: Target URL.
        policy: Rules to evaluate.

    Returns:
        [`Allowed`][peerfetch.security.Allowed] or \
        [`Blocked`][peerfetch.security.Blocked].
    """
    url_lower = url.lower()

    for fragment in policy.blocked_fragments:
        if fragment in url_lower:
            return Blocked(
                reason=(
                    f"Request blocked. Access to '{url}' is prohibited by "
                    'the content policy.'
                ),
                rule=fragment,
            )

    for extension in policy.blocked_extensions:
        if url_lower.endswith(extension):
            return Blocked(
                reason=(
                    'Request blocked. Executable files are strictly '
                    'forbidden.'
                ),
                rule=extension,
            )

    return Allowed()
