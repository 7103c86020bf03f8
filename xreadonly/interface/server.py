"""
Local policy server for extension-based hosts.

A browser extension cannot import the Python package, so it polls this server for the
compiled policy: declarativeNetRequest rules for the network layer, and the stylesheet
and content script for the DOM layer.
"""

import re
import logging
import threading

from flask import Flask, Response, jsonify
from flask_cors import CORS

from xreadonly.enforcer.script import build_content_script, build_stylesheet
from xreadonly.policy.table import PolicyTable, OperationMatch

logger = logging.getLogger(__name__)

# Rule id 1 is left for the extension's own allow-all fallback.
FIRST_RULE_ID = 2


def compile_dnr_rule(regex: str, id: int, priority: int = 2) -> dict:
    """
    Compile a single declarativeNetRequest block rule for POST requests made by the page.

    Args:
        regex (str): RE2 pattern matched against the full request URL.
        id (int): A unique identifier for the rule.
        priority (int, optional): The priority of the rule. Defaults to 2.

    Returns:
        dict: The compiled declarativeNetRequest rule.
    """
    return {
        "id": id,
        "priority": priority,
        "action": {"type": "block"},
        "condition": {
            "regexFilter": regex,
            "requestMethods": ["post"],
            "resourceTypes": ["xmlhttprequest"]
        }
    }


def deduplicate_rules(rules: list[dict]) -> list[dict]:
    """
    Removes duplicate rules from a ruleset and reassigns ids sequentially.
    A duplicate is a rule with the same filter, request methods and action type.
    """
    seen = set()
    unique_rules = []

    for rule in rules:
        condition = rule.get("condition", {})
        key = (
            condition.get("regexFilter"),
            condition.get("urlFilter"),
            tuple(condition.get("requestMethods", [])),
            rule.get("action", {}).get("type"),
        )
        if key not in seen:
            seen.add(key)
            unique_rules.append(rule)

    for idx, rule in enumerate(unique_rules, start=FIRST_RULE_ID):
        rule["id"] = idx

    return unique_rules


def compile_dnr_rules(table: PolicyTable) -> list[dict]:
    """
    Translate the request side of the table into declarativeNetRequest rules.

    GraphQL operations become one rule each, anchored at a path segment unless the table
    uses prefix matching. REST patterns get one rule per REST marker, since a single DNR
    condition cannot require two independent substrings. The classifier looks for the
    marker and the pattern anywhere in the URL, so the rule accepts them in either order.
    """
    rules = []
    marker = re.escape(table.graphql_marker)
    for operation in table.operations:
        regex = f"{marker}.*/{re.escape(operation)}"
        if table.operation_match is OperationMatch.SEGMENT:
            regex += "([/?#]|$)"
        rules.append(compile_dnr_rule(regex, 0))

    for rest_marker in table.rest_markers:
        for pattern in table.path_patterns:
            rules.append(compile_dnr_rule(_rest_regex(rest_marker, pattern), 0))

    return deduplicate_rules(rules)


def _rest_regex(rest_marker: str, pattern: str) -> str:
    marker, path = re.escape(rest_marker), re.escape(pattern)
    branches = [f"{marker}.*{path}", f"{path}.*{marker}"]
    if rest_marker.endswith("/") and pattern.startswith("/"):
        # The marker's trailing slash may be the pattern's leading one
        branches.append(re.escape(rest_marker[:-1]) + path)
    return "(" + "|".join(branches) + ")"


def create_app(table: PolicyTable) -> Flask:
    app = Flask(__name__)
    CORS(app)

    rules = compile_dnr_rules(table)
    content_script = build_content_script(table)
    stylesheet = build_stylesheet(table)

    @app.get("/ping")
    def ping():
        return jsonify({"status": "ok", "version": table.version})

    @app.get("/policy")
    def policy():
        return jsonify(table.to_dict())

    @app.get("/rules")
    def dnr_rules():
        return jsonify({"version": table.version, "rules": rules})

    @app.get("/content.js")
    def content_js():
        return Response(content_script, mimetype="application/javascript")

    @app.get("/inject.css")
    def inject_css():
        return Response(stylesheet, mimetype="text/css")

    return app


class PolicyServer:
    """
    Serves the compiled policy on localhost, either in the foreground (`run`) or in a
    background daemon thread (`start`) next to a running browser.
    """

    def __init__(self, table: PolicyTable, listener_port: int = 12354):
        self.listener_port = listener_port
        self.app = create_app(table)
        self._thread: threading.Thread | None = None

        log = logging.getLogger('werkzeug')
        log.setLevel(logging.ERROR)

    def run(self) -> None:
        logger.info(f"Policy server listening on http://127.0.0.1:{self.listener_port}")
        self.app.run(host="127.0.0.1", port=self.listener_port)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self.run, daemon=True)
        self._thread.start()
