"""
Maps a completed torrent to its destination path on the remote using the archiving rules.

Everything here is pure: the same item and rule list always produce the same path.
"""

import logging
import re
from typing import Iterable, Optional, Sequence

from qb_cloud_sync.models.rules import ArchivingRule, ConditionalRule, DefaultRule
from qb_cloud_sync.models.task import TorrentItem

log = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Uncategorized"
DEFAULT_TAG = "UnTagged"
UNKNOWN_YEAR = "UnknownYear"

YEAR_PATTERN = re.compile(r"\((\d{4})\)")
PLACEHOLDER_PATTERN = re.compile(r"\{(torrentName|category|tag|year)\}")


def normalize_tags(raw_tags: str) -> list[str]:
    """
    Splits qBittorrent's comma-separated tag string into lowercase tags.

    Order of first appearance is kept so that `{tag}` is stable; empty entries
    and duplicates are dropped.
    """
    tags = (tag.strip().lower() for tag in raw_tags.split(","))
    return list(dict.fromkeys(tag for tag in tags if tag))


def extract_year(name: str) -> Optional[str]:
    """Returns the first parenthesised 4-digit group in a name, e.g. '2020'."""
    match = YEAR_PATTERN.search(name)
    return match.group(1) if match else None


def _category_of(item: TorrentItem) -> str:
    return item.category.strip() or DEFAULT_CATEGORY


def _name_matches(pattern: str, name: str) -> bool:
    try:
        return re.search(pattern, name, re.IGNORECASE) is not None
    except re.error as e:
        log.warning(f"Invalid name_matches pattern {pattern!r} in archiving rule: {e}")
        return False


def rule_matches(rule: ConditionalRule, item: TorrentItem) -> bool:
    """
    Evaluates a conditional rule against an item.

    Conditions present on the rule are OR-ed: a category match, any tag overlap,
    or a name regex hit is enough.
    """
    if rule.category is not None:
        if rule.category.strip().lower() == _category_of(item).lower():
            return True

    if rule.tags is not None:
        wanted = {tag.strip().lower() for tag in rule.tags}
        if wanted.intersection(normalize_tags(item.tags)):
            return True

    if rule.name_matches is not None and _name_matches(rule.name_matches, item.name):
        return True

    return False


def find_matching_rule(
    item: TorrentItem, rules: Iterable[ArchivingRule]
) -> Optional[ArchivingRule]:
    """
    Returns the first conditional rule that matches, else the first default rule.

    A default rule is never matched where it stands; it is held back until the
    whole list has been scanned.
    """
    default_rule: Optional[DefaultRule] = None
    for rule in rules:
        if isinstance(rule, DefaultRule):
            if default_rule is None:
                default_rule = rule
            continue
        if rule_matches(rule, item):
            return rule
    return default_rule


def _clean_path(path: str) -> str:
    return path.replace("\\", "/").strip("/")


def render_remote_path(pattern: str, item: TorrentItem) -> str:
    """Substitutes the supported placeholders in a rule's remotePath pattern."""
    tags = normalize_tags(item.tags)
    replacements = {
        "torrentName": item.name,
        "category": _category_of(item),
        "tag": tags[0] if tags else DEFAULT_TAG,
        "year": extract_year(item.name) or UNKNOWN_YEAR,
    }
    # single pass, so placeholder-like text inside a torrent name stays literal
    result = PLACEHOLDER_PATTERN.sub(lambda m: replacements[m.group(1)], pattern)
    return _clean_path(result)


def resolve_remote_path(item: TorrentItem, rules: Sequence[ArchivingRule]) -> str:
    """
    Computes the remote path (relative to the configured upload root) for an item.

    With no matching rule and no default rule, the path falls back to
    `{tag}/{category}/{torrentName}`.
    """
    rule = find_matching_rule(item, rules)
    if rule is not None:
        return render_remote_path(rule.remote_path, item)
    return render_remote_path("{tag}/{category}/{torrentName}", item)
