"""
In-memory model of a browser document for running the DOM enforcer outside a page.

Elements are lxml HTML elements; selectors go through cssselect. The model covers the
parts of the DOM the enforcer depends on:
    - ready state and `DOMContentLoaded`;
    - child-list mutation observers whose records are queued and delivered on
      `flush_mutations()`, like a microtask checkpoint;
    - click dispatch with a capture phase on the document followed by the target and
      bubble phase, honoring `stopPropagation` and `stopImmediatePropagation`;
    - inline styles and window-scoped flags.
"""

from functools import lru_cache
from dataclasses import dataclass, field
from typing import Callable, Literal

from cssselect import HTMLTranslator, SelectorError
from lxml import etree, html

_translator = HTMLTranslator()


@lru_cache(maxsize=256)
def _compile(selector: str) -> etree.XPath:
    try:
        expression = _translator.css_to_xpath(selector, prefix="descendant-or-self::")
    except SelectorError as e:
        raise ValueError(f"Invalid selector {selector!r}: {e}")
    return etree.XPath(expression)


@dataclass
class MutationRecord:
    target: html.HtmlElement
    added_nodes: list = field(default_factory=list)
    removed_nodes: list = field(default_factory=list)
    type: Literal["childList"] = "childList"


class MutationObserver:
    def __init__(self, document: "Document", callback: Callable[[list[MutationRecord]], None]):
        self.document = document
        self.callback = callback
        self.target = None
        self.subtree = False
        self.child_list = False
        self._pending: list[MutationRecord] = []

    def observe(self, target, child_list: bool = True, subtree: bool = False) -> None:
        self.target = target
        self.child_list = child_list
        self.subtree = subtree
        if self not in self.document._observers:
            self.document._observers.append(self)

    def disconnect(self) -> None:
        self._pending.clear()
        if self in self.document._observers:
            self.document._observers.remove(self)

    def _wants(self, record: MutationRecord) -> bool:
        if not self.child_list or self.target is None:
            return False
        if record.target is self.target:
            return True
        return self.subtree and any(a is self.target for a in record.target.iterancestors())


class ClickEvent:
    def __init__(self, target):
        self.type = "click"
        self.target = target
        self.current_target = None
        self.default_prevented = False
        self.propagation_stopped = False
        self.immediate_propagation_stopped = False

    def prevent_default(self) -> None:
        self.default_prevented = True

    def stop_propagation(self) -> None:
        self.propagation_stopped = True

    def stop_immediate_propagation(self) -> None:
        self.propagation_stopped = True
        self.immediate_propagation_stopped = True


Listener = Callable[[ClickEvent], None]


class Document:
    """A page's content tree as seen by the enforcer. One instance per page load."""

    def __init__(self, markup: str | None = None):
        self.window: dict[str, object] = {}
        self.ready_state: Literal["loading", "interactive"] = "loading"
        self._root = None
        self._observers: list[MutationObserver] = []
        self._document_listeners: dict[str, list[tuple[Callable, bool]]] = {}
        # Keyed by element; holding the proxy keeps lxml returning the same object for the node.
        self._element_listeners: dict[object, list[tuple[str, Listener, bool]]] = {}
        if markup is not None:
            self.set_body(markup)

    @property
    def body(self):
        if self._root is None:
            return None
        return self._root.find("body")

    def set_body(self, markup: str) -> None:
        """Parse the page and move to the interactive state, firing DOMContentLoaded."""
        if not markup.strip():
            markup = "<html><body></body></html>"
        self._root = html.document_fromstring(markup)
        if self._root.find("body") is None:
            self._root.append(html.Element("body"))
        self.ready_state = "interactive"
        for listener, _ in list(self._document_listeners.get("DOMContentLoaded", [])):
            listener(None)

    def create_element(self, markup: str):
        return html.fragment_fromstring(markup)

    def query_selector_all(self, selector: str) -> list:
        if self._root is None or not selector:
            return []
        return _compile(selector)(self._root)

    def matches(self, element, selector: str) -> bool:
        # Evaluated from the root so combinators behave as in Element.matches().
        return element in _compile(selector)(element.getroottree())

    def append_child(self, parent, child) -> None:
        parent.append(child)
        self._queue(MutationRecord(target=parent, added_nodes=[child]))

    def remove_child(self, parent, child) -> None:
        parent.remove(child)
        self._queue(MutationRecord(target=parent, removed_nodes=[child]))

    def _queue(self, record: MutationRecord) -> None:
        for observer in self._observers:
            if observer._wants(record):
                observer._pending.append(record)

    def observe(self, target, callback: Callable[[list[MutationRecord]], None],
                child_list: bool = True, subtree: bool = False) -> MutationObserver:
        observer = MutationObserver(self, callback)
        observer.observe(target, child_list=child_list, subtree=subtree)
        return observer

    def flush_mutations(self) -> int:
        """Deliver queued mutation records. Returns the number of callbacks invoked."""
        delivered = 0
        # Callbacks may mutate the tree again; keep going until the queue drains.
        while any(o._pending for o in self._observers):
            for observer in list(self._observers):
                if not observer._pending:
                    continue
                records, observer._pending = observer._pending, []
                observer.callback(records)
                delivered += 1
        return delivered

    def add_event_listener(self, type: str, listener: Callable, capture: bool = False, target=None) -> None:
        if target is None:
            self._document_listeners.setdefault(type, []).append((listener, capture))
        else:
            self._element_listeners.setdefault(target, []).append((type, listener, capture))

    def dispatch_click(self, target) -> ClickEvent:
        """
        Dispatch a click at `target`: capture listeners on the document first, then
        listeners on the target and its ancestors (bubble), then bubble listeners on the
        document. Page handlers registered on elements run only if nothing stopped
        propagation earlier.
        """
        event = ClickEvent(target)
        path = [target] + list(target.iterancestors())

        event.current_target = self
        for listener, capture in list(self._document_listeners.get("click", [])):
            if capture:
                listener(event)
                if event.immediate_propagation_stopped:
                    return event
        if event.propagation_stopped:
            return event

        for node in path:
            event.current_target = node
            for type, listener, _ in list(self._element_listeners.get(node, [])):
                if type != "click":
                    continue
                listener(event)
                if event.immediate_propagation_stopped:
                    return event
            if event.propagation_stopped:
                return event

        event.current_target = self
        for listener, capture in list(self._document_listeners.get("click", [])):
            if not capture:
                listener(event)
                if event.immediate_propagation_stopped:
                    break
        return event


def get_style(element, name: str) -> str | None:
    return _parse_style(element.get("style", "")).get(name)


def set_style(element, name: str, value: str) -> None:
    styles = _parse_style(element.get("style", ""))
    styles[name] = value
    element.set("style", "; ".join(f"{k}: {v}" for k, v in styles.items()))


def _parse_style(style: str) -> dict[str, str]:
    styles = {}
    for declaration in style.split(";"):
        if ":" not in declaration:
            continue
        name, value = declaration.split(":", 1)
        styles[name.strip()] = value.strip()
    return styles
