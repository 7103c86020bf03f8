"""
Policy table shared by the request classifier and the DOM enforcer.

The table is plain configuration data kept in two JSON resources:
    - `requests.json`: GraphQL operation identifiers, REST path patterns and the markers
      that tell the two endpoint families apart.
    - `controls.json`: CSS selectors for interactive controls, each paired with a
      suppression mode (`hide` or `disable`).

When the site changes its markup or API naming, edit the resources. Nothing at runtime
mutates a table once it is built.
"""

import os
import json

from enum import Enum
from dataclasses import dataclass, field, replace
from typing import Any

from cssselect import HTMLTranslator, SelectorError

RESOURCE_DIR = os.path.join(os.path.dirname(__file__), "resources")
DEFAULT_REQUESTS_PATH = os.path.join(RESOURCE_DIR, "requests.json")
DEFAULT_CONTROLS_PATH = os.path.join(RESOURCE_DIR, "controls.json")

_translator = HTMLTranslator()


class SuppressionMode(str, Enum):
    HIDE = "hide"
    DISABLE = "disable"


class OperationMatch(str, Enum):
    """
    How an operation identifier is matched against a GraphQL URL.

    SEGMENT: the identifier must be a whole path segment, so `CreateTweet` does not
             block `CreateTweetDraftPreview`.
    PREFIX:  `/` + identifier anywhere in the URL (the historical behavior; over-matches
             longer operation names that start with a blocked one).
    """
    SEGMENT = "segment"
    PREFIX = "prefix"


@dataclass(frozen=True)
class ControlDescriptor:
    selector: str
    mode: SuppressionMode
    description: str = ""

    def __post_init__(self):
        """
        The selector must parse as CSS. An unparseable selector would make every
        enforcement pass throw, so it is rejected when the taxonomy is loaded.
        """
        if not isinstance(self.selector, str) or not self.selector.strip():
            raise InvalidPolicyTableError("Control selector must be a non-empty string")
        try:
            _translator.css_to_xpath(self.selector)
        except SelectorError as e:
            raise InvalidPolicyTableError(f"Invalid control selector {self.selector!r}: {e}")
        if not isinstance(self.mode, SuppressionMode):
            raise InvalidPolicyTableError(f"Unknown suppression mode: {self.mode!r}")

    @staticmethod
    def from_dict(data: dict) -> "ControlDescriptor":
        if not isinstance(data, dict):
            raise InvalidPolicyTableError(f"Control must be an object, got {type(data).__name__}")
        required = ["selector", "mode"]
        missing = [k for k in required if k not in data]
        if missing:
            raise InvalidPolicyTableError(f"Control is missing required fields: {', '.join(missing)}")
        if not isinstance(data["selector"], str) or not data["selector"].strip():
            raise InvalidPolicyTableError("Control selector must be a non-empty string")
        if not isinstance(data["mode"], str):
            raise InvalidPolicyTableError(f"Unknown suppression mode: {data['mode']!r}")
        try:
            mode = SuppressionMode(data["mode"].lower())
        except ValueError:
            raise InvalidPolicyTableError(f"Unknown suppression mode: {data['mode']!r}")
        description = data.get("description", "")
        if not isinstance(description, str):
            raise InvalidPolicyTableError("Control description must be a string")
        return ControlDescriptor(
            selector=data["selector"].strip(),
            mode=mode,
            description=description
        )

    def to_dict(self) -> dict:
        return {"selector": self.selector, "mode": self.mode.value, "description": self.description}


@dataclass(frozen=True)
class PolicyTable:
    version: str
    operations: tuple[str, ...]
    path_patterns: tuple[str, ...]
    graphql_marker: str = "/graphql/"
    rest_markers: tuple[str, ...] = ("/api/1.1/", "/1.1/")
    operation_match: OperationMatch = OperationMatch.SEGMENT
    controls: tuple[ControlDescriptor, ...] = field(default_factory=tuple)

    def __post_init__(self):
        """
        Validate the table after initialization.

        Operation identifiers must be unique, non-empty and must not contain a path
        separator (they are matched as a single path segment). Empty path patterns
        would match every REST request and are rejected.
        """
        seen = set()
        for operation in self.operations:
            if not isinstance(operation, str) or not operation or "/" in operation:
                raise InvalidPolicyTableError(f"Invalid operation identifier: {operation!r}")
            if operation in seen:
                raise InvalidPolicyTableError(f"Duplicate operation identifier: {operation}")
            seen.add(operation)
        if any(not isinstance(pattern, str) or not pattern for pattern in self.path_patterns):
            raise InvalidPolicyTableError("Path patterns must be non-empty strings")
        if any(not isinstance(marker, str) or not marker for marker in self.rest_markers):
            raise InvalidPolicyTableError("REST markers must be non-empty strings")
        if not isinstance(self.graphql_marker, str) or not self.graphql_marker:
            raise InvalidPolicyTableError("graphql_marker must be a non-empty string")
        if any(not isinstance(control, ControlDescriptor) for control in self.controls):
            raise InvalidPolicyTableError("Controls must be ControlDescriptor instances")

    @property
    def hide_selectors(self) -> tuple[str, ...]:
        return tuple(c.selector for c in self.controls if c.mode is SuppressionMode.HIDE)

    @property
    def disable_selectors(self) -> tuple[str, ...]:
        return tuple(c.selector for c in self.controls if c.mode is SuppressionMode.DISABLE)

    @property
    def all_selectors(self) -> tuple[str, ...]:
        return self.hide_selectors + self.disable_selectors

    def with_controls(self, controls: list[ControlDescriptor] | tuple[ControlDescriptor, ...]) -> "PolicyTable":
        return replace(self, controls=tuple(controls))

    @staticmethod
    def from_dict(data: dict, controls: list[dict] | None = None) -> "PolicyTable":
        if not isinstance(data, dict):
            raise InvalidPolicyTableError(f"Policy table must be an object, got {type(data).__name__}")
        required_keys = ["version", "operations", "path_patterns"]
        missing = [k for k in required_keys if k not in data]
        if missing:
            raise InvalidPolicyTableError(f"Policy table is missing required fields: {', '.join(missing)}")
        for key in ["operations", "path_patterns", "rest_markers", "controls"]:
            if key in data and not isinstance(data[key], list):
                raise InvalidPolicyTableError(f"{key} must be a list")

        try:
            operation_match = OperationMatch(data.get("operation_match", OperationMatch.SEGMENT.value))
        except ValueError:
            raise InvalidPolicyTableError(f"Unknown operation match mode: {data['operation_match']!r}")

        if controls is None:
            controls = data.get("controls", [])
        return PolicyTable(
            version=str(data["version"]),
            operations=tuple(data["operations"]),
            path_patterns=tuple(data["path_patterns"]),
            graphql_marker=data.get("graphql_marker", "/graphql/"),
            rest_markers=tuple(data.get("rest_markers", ["/api/1.1/", "/1.1/"])),
            operation_match=operation_match,
            controls=tuple(ControlDescriptor.from_dict(c) for c in controls)
        )

    @staticmethod
    def from_json(json_data: str) -> "PolicyTable":
        try:
            data = json.loads(json_data)
        except json.JSONDecodeError as e:
            raise InvalidPolicyTableError(f"Invalid JSON format: {e}")
        return PolicyTable.from_dict(data)

    @staticmethod
    def load(requests_path: str = DEFAULT_REQUESTS_PATH, controls_path: str | None = DEFAULT_CONTROLS_PATH) -> "PolicyTable":
        """
        Load a table from the request-rule file and (optionally) the control taxonomy file.
        Raises InvalidPolicyTableError if either file cannot be read or is malformed.
        """
        data = _read_json(requests_path)
        controls = load_controls(controls_path) if controls_path else []
        return PolicyTable.from_dict(data, controls=[c.to_dict() for c in controls])

    @staticmethod
    def default() -> "PolicyTable":
        return PolicyTable.load(DEFAULT_REQUESTS_PATH, DEFAULT_CONTROLS_PATH)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "graphql_marker": self.graphql_marker,
            "rest_markers": list(self.rest_markers),
            "operation_match": self.operation_match.value,
            "operations": list(self.operations),
            "path_patterns": list(self.path_patterns),
            "controls": [c.to_dict() for c in self.controls],
        }


def load_controls(path: str) -> list[ControlDescriptor]:
    """Read a control taxonomy file. Accepts either `{"controls": [...]}` or a bare list."""
    data = _read_json(path)
    if isinstance(data, dict):
        data = data.get("controls")
    if not isinstance(data, list):
        raise InvalidPolicyTableError(f"Control taxonomy in {path} must be a list of controls")
    return [ControlDescriptor.from_dict(c) for c in data]


def _read_json(path: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except OSError as e:
        raise InvalidPolicyTableError(f"Cannot read {path}: {e}")
    except json.JSONDecodeError as e:
        raise InvalidPolicyTableError(f"Invalid JSON format in {path}: {e}")


class InvalidPolicyTableError(Exception):
    """
    Raised when a policy table or control taxonomy is missing or malformed.
    """
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return f"InvalidPolicyTableError: {self.message}."
