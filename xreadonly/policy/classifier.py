"""
Network-level classification of outbound requests made by the embedded page.

This is the authoritative read-only layer: even when the injected DOM enforcer misses a
control, the write request behind it is blocked here before it reaches the network.

Matching order: method gate -> GraphQL operation identifiers -> REST path patterns ->
default allow. The classifier fails open: anything it does not recognise is allowed.
"""

import logging

from enum import Enum
from dataclasses import dataclass
from typing import Any, Literal

from .table import PolicyTable, OperationMatch

logger = logging.getLogger(__name__)

# Characters that end a path segment in a URL.
SEGMENT_TERMINATORS = ("/", "?", "#")


class Verdict(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"


@dataclass(frozen=True)
class Classification:
    verdict: Verdict
    rule: str | None = None
    kind: Literal["graphql", "rest"] | None = None

    @property
    def blocked(self) -> bool:
        return self.verdict is Verdict.BLOCK


ALLOW = Classification(Verdict.ALLOW)


class RequestClassifier:
    """
    Decides ALLOW or BLOCK for a single (method, url) pair against a PolicyTable.

    Holds no mutable state, so one instance can serve every in-flight request.
    """

    def __init__(self, table: PolicyTable, verbose: bool = False):
        self.table = table
        self.verbose = verbose

    def classify(self, method: str | None, url: str | None) -> Classification:
        # Only POST requests carry mutations
        if not method or method.upper() != "POST":
            return ALLOW
        if not url:
            return ALLOW

        if self.table.graphql_marker in url:
            operation = self._match_operation(url)
            if operation:
                if self.verbose:
                    logger.info(f"BLOCKED GraphQL mutation: {operation}")
                return Classification(Verdict.BLOCK, operation, "graphql")

        if any(marker in url for marker in self.table.rest_markers):
            for pattern in self.table.path_patterns:
                if pattern in url:
                    if self.verbose:
                        logger.info(f"BLOCKED REST endpoint: {pattern}")
                    return Classification(Verdict.BLOCK, pattern, "rest")

        return ALLOW

    def classify_request(self, request: Any) -> Classification:
        """
        Classify a request object exposing `method` and `url` (e.g. a Playwright Request).
        """
        return self.classify(getattr(request, "method", None), getattr(request, "url", None))

    def _match_operation(self, url: str) -> str | None:
        prefix_only = self.table.operation_match is OperationMatch.PREFIX
        for operation in self.table.operations:
            token = "/" + operation
            start = url.find(token)
            while start != -1:
                end = start + len(token)
                if prefix_only or end == len(url) or url[end] in SEGMENT_TERMINATORS:
                    return operation
                start = url.find(token, start + 1)
        return None
