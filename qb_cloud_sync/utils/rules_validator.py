"""
JSON Schema validation for archiving rule lists.
Allows external tools to validate rule files and provides better error messages.
"""

import json
from pathlib import Path
from typing import Any

from jsonschema import Draft7Validator

_NON_EMPTY_STRING = {"type": "string", "minLength": 1}

# JSON Schema for the archiving rules array
RULES_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "qb-cloud-sync Archiving Rules",
    "description": (
        "Ordered list of rules mapping a completed torrent to a remote path. "
        "The first matching conditional rule wins; a 'default' rule applies "
        "only when nothing else matches."
    ),
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "if": {
                "oneOf": [
                    {"const": "default"},
                    {
                        "type": "object",
                        "properties": {
                            "category": {
                                "type": "string",
                                "description": "Case-insensitive category equality",
                            },
                            "tags": {
                                "description": "Tag or tags; any overlap matches",
                                "oneOf": [
                                    _NON_EMPTY_STRING,
                                    {"type": "array", "items": _NON_EMPTY_STRING},
                                ],
                            },
                            "name_matches": {
                                "type": "string",
                                "description": "Case-insensitive regular expression",
                            },
                        },
                    },
                ]
            },
            "then": {
                "type": "object",
                "properties": {
                    "remotePath": {
                        "type": "string",
                        "minLength": 1,
                        "description": (
                            "Destination pattern; supports {torrentName}, "
                            "{category}, {tag} and {year}"
                        ),
                    },
                },
                "required": ["remotePath"],
            },
            "description": {"type": "string"},
        },
        "required": ["if", "then"],
    },
}

_validator = Draft7Validator(RULES_SCHEMA)


def validate_rules_schema(rules: Any) -> tuple[bool, list[str]]:
    """
    Validate a decoded rule list against the JSON schema.

    Args:
        rules: The decoded JSON value (expected to be a list)

    Returns:
        Tuple of (is_valid, error_messages)
    """
    errors = sorted(_validator.iter_errors(rules), key=lambda e: [str(p) for p in e.path])

    if not errors:
        return True, []

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        error_messages.append(f"{path}: {error.message}")

    return False, error_messages


def export_schema(output_path: Path) -> None:
    """
    Export JSON schema to file for external validation tools.

    Args:
        output_path: Path to save schema file
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(RULES_SCHEMA, f, indent=2)
