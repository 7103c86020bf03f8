"""
DOM-level read-only enforcement.

Hides or disables interactive controls on the page and keeps doing so as the page
mutates (infinite scroll, soft navigations). A capture-phase click listener blocks
clicks that land on a control before the next enforcement pass has reached it.

The in-page JavaScript built by `script.build_content_script` has the same behavior;
this module runs it against a `Document` so the policy can be exercised outside a page.
"""

import logging

from functools import partial
from typing import Callable

from xreadonly.policy.table import PolicyTable, InvalidPolicyTableError, load_controls
from .document import Document, ClickEvent, MutationRecord, MutationObserver, set_style

logger = logging.getLogger(__name__)

# Window-scoped flag marking a document as already initialized.
INIT_FLAG = "__xreadonly_injected"

DISABLED_OPACITY = "0.5"


class DomPolicyEnforcer:

    def __init__(self, table: PolicyTable):
        self.table = table
        self.hide_selector = ",".join(table.hide_selectors)
        self.disable_selector = ",".join(table.disable_selectors)
        self.any_selector = ",".join(table.all_selectors)
        self.document: Document | None = None
        self.observer: MutationObserver | None = None

    @staticmethod
    def from_asset(
            table: PolicyTable,
            controls_path: str,
            report_error: Callable[[Exception], None] | None = None
    ) -> "DomPolicyEnforcer":
        """
        Build an enforcer whose controls come from the taxonomy file at `controls_path`.

        If the file is missing or malformed the enforcer has no controls and does nothing.
        The failure is logged and handed to `report_error` so the host can surface it.
        """
        return DomPolicyEnforcer(with_control_taxonomy(table, controls_path, report_error))

    @property
    def is_noop(self) -> bool:
        return not self.any_selector

    def attach(self, document: Document) -> "DomPolicyEnforcer":
        if self.document is not None and self.document is not document:
            self.on_navigation_start()
        self.document = document
        return self

    def install(self) -> bool:
        """
        One-time setup for the attached document. Returns False if the document was
        already initialized.
        """
        document = self._require_document()
        if document.window.get(INIT_FLAG):
            return False
        document.window[INIT_FLAG] = True

        # Capture phase so this runs before the page's own handlers
        document.add_event_listener("click", self._intercept_click, capture=True)

        if document.body is not None:
            self._start()
        else:
            document.add_event_listener("DOMContentLoaded", partial(self._on_ready, document))
        return True

    def enforce(self) -> int:
        """
        Apply the policy to the whole current tree. Safe to call any number of times.
        Returns the number of elements touched.
        """
        document = self.document
        if document is None or document.body is None:
            return 0

        touched = 0
        if self.hide_selector:
            for element in document.query_selector_all(self.hide_selector):
                set_style(element, "display", "none")
                touched += 1
        if self.disable_selector:
            for element in document.query_selector_all(self.disable_selector):
                set_style(element, "pointer-events", "none")
                set_style(element, "opacity", DISABLED_OPACITY)
                touched += 1
        logger.debug(f"Enforcement pass touched {touched} element(s).")
        return touched

    def on_navigation_start(self) -> None:
        """Forget the current document. The next page needs attach() and install() again."""
        if self.observer is not None:
            self.observer.disconnect()
        self.observer = None
        self.document = None

    def _start(self) -> None:
        document = self._require_document()
        self.enforce()
        if self.observer is None:
            self.observer = document.observe(document.body, self._on_mutations, child_list=True, subtree=True)

    def _on_ready(self, document: Document, _event) -> None:
        # Ignore a document this enforcer has since been detached from
        if document is self.document:
            self._start()

    def _on_mutations(self, records: list[MutationRecord]) -> None:
        if any(record.added_nodes for record in records):
            self.enforce()

    def _intercept_click(self, event: ClickEvent) -> None:
        if not self.any_selector or self.document is None:
            return
        body = self.document.body
        target = event.target
        # Walk up the tree to check whether the click is on or inside a control
        while target is not None and target is not body:
            if self.document.matches(target, self.any_selector):
                event.prevent_default()
                event.stop_propagation()
                event.stop_immediate_propagation()
                logger.debug(f"Blocked click on <{target.tag}> {dict(target.attrib)}")
                return
            target = target.getparent()

    def _require_document(self) -> Document:
        if self.document is None:
            raise RuntimeError("DomPolicyEnforcer is not attached to a document")
        return self.document


def with_control_taxonomy(
        table: PolicyTable,
        controls_path: str,
        report_error: Callable[[Exception], None] | None = None
) -> PolicyTable:
    """
    Return `table` with the controls read from `controls_path`. A missing or malformed
    taxonomy yields a table without controls; the error is logged and reported.
    """
    try:
        controls = load_controls(controls_path)
    except InvalidPolicyTableError as e:
        logger.error(f"Control taxonomy unavailable, DOM enforcement disabled: {e}")
        if report_error:
            report_error(e)
        controls = []
    return table.with_controls(controls)
