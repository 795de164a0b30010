"""
Archiving rule variants and the parser that builds them from decoded JSON.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from qb_cloud_sync.exceptions import RuleValidationError
from qb_cloud_sync.utils.rules_validator import validate_rules_schema

log = logging.getLogger(__name__)

DEFAULT_MARKER = "default"


@dataclass(frozen=True)
class ConditionalRule:
    """A rule that applies when any of its specified conditions holds."""

    remote_path: str
    category: Optional[str] = None
    tags: Optional[tuple[str, ...]] = None
    name_matches: Optional[str] = None
    description: Optional[str] = None

    @property
    def has_conditions(self) -> bool:
        return any(
            value is not None for value in (self.category, self.tags, self.name_matches)
        )


@dataclass(frozen=True)
class DefaultRule:
    """The fallback rule, used only when no conditional rule matches."""

    remote_path: str
    description: Optional[str] = None


ArchivingRule = Union[ConditionalRule, DefaultRule]


def _parse_rule(raw: dict[str, Any]) -> ArchivingRule:
    condition = raw["if"]
    remote_path = raw["then"]["remotePath"]
    description = raw.get("description")

    if condition == DEFAULT_MARKER:
        return DefaultRule(remote_path=remote_path, description=description)

    tags = condition.get("tags")
    if isinstance(tags, str):
        tags = (tags,)
    elif tags is not None:
        tags = tuple(tags)

    rule = ConditionalRule(
        remote_path=remote_path,
        category=condition.get("category"),
        tags=tags,
        name_matches=condition.get("name_matches"),
        description=description,
    )
    if not rule.has_conditions:
        log.warning(
            f"Archiving rule for '{remote_path}' has no conditions and will never match."
        )
    return rule


def parse_rules(raw_rules: Any) -> list[ArchivingRule]:
    """
    Converts a decoded JSON rule list into rule objects, preserving order.

    Raises:
        RuleValidationError: If the value is not a list of well-formed rules.
    """
    is_valid, errors = validate_rules_schema(raw_rules)
    if not is_valid:
        raise RuleValidationError(
            "Invalid archiving rules:\n" + "\n".join(f"  {e}" for e in errors)
        )
    return [_parse_rule(raw) for raw in raw_rules]
