"""
Builds the JavaScript and CSS injected into the live page by a host surface.

Both are compiled from the PolicyTable, so updating the control taxonomy changes what the
page receives without touching this module.
"""

import json
import logging

from xreadonly.policy.table import PolicyTable
from .enforcer import INIT_FLAG, DISABLED_OPACITY

logger = logging.getLogger(__name__)

STYLE_ELEMENT_ID = "xreadonly-css"

# In-page enforcer, formatted with the selectors of the current table.
content_script_template = """(function() {{
  'use strict';

  // Avoid double-injection
  if (window.{initFlag}) return;
  window.{initFlag} = true;

  // A selector the browser cannot parse would make every querySelectorAll() throw
  function parseable(selectors) {{
    return selectors.filter(function(selector) {{
      try {{
        document.createDocumentFragment().querySelector(selector);
        return true;
      }} catch (e) {{
        console.error('[xreadonly] dropping invalid selector: ' + selector);
        return false;
      }}
    }});
  }}

  var HIDE_SELECTORS = parseable({hideSelectors});
  var DISABLE_SELECTORS = parseable({disableSelectors});
  var SELECTORS = HIDE_SELECTORS.concat(DISABLE_SELECTORS);

  var HIDE_SELECTOR_STRING = HIDE_SELECTORS.join(',');
  var DISABLE_SELECTOR_STRING = DISABLE_SELECTORS.join(',');
  var ANY_SELECTOR_STRING = SELECTORS.join(',');

  function enforce() {{
    if (HIDE_SELECTOR_STRING) {{
      var hidden = document.querySelectorAll(HIDE_SELECTOR_STRING);
      for (var i = 0; i < hidden.length; i++) {{
        hidden[i].style.display = 'none';
      }}
    }}
    if (DISABLE_SELECTOR_STRING) {{
      var disabled = document.querySelectorAll(DISABLE_SELECTOR_STRING);
      for (var j = 0; j < disabled.length; j++) {{
        disabled[j].style.pointerEvents = 'none';
        disabled[j].style.opacity = '{disabledOpacity}';
      }}
    }}
  }}

  var observer = new MutationObserver(function(mutations) {{
    for (var i = 0; i < mutations.length; i++) {{
      if (mutations[i].addedNodes.length > 0) {{
        enforce();
        return;
      }}
    }}
  }});

  function start() {{
    enforce();
    observer.observe(document.body, {{ childList: true, subtree: true }});
  }}

  // Capture phase, so this runs before the page's own handlers
  document.addEventListener('click', function(e) {{
    if (!ANY_SELECTOR_STRING) return;
    var target = e.target;
    while (target && target !== document.body) {{
      if (target.nodeType === 1 && target.matches(ANY_SELECTOR_STRING)) {{
        e.preventDefault();
        e.stopPropagation();
        e.stopImmediatePropagation();
        return false;
      }}
      target = target.parentElement;
    }}
  }}, true);

  if (document.body) {{
    start();
  }} else {{
    document.addEventListener('DOMContentLoaded', start);
  }}
}})();
"""

css_injection_template = """(function() {{
  if (document.getElementById('{styleId}')) return;
  var style = document.createElement('style');
  style.id = '{styleId}';
  style.textContent = '{css}';
  (document.head || document.documentElement).appendChild(style);
}})();
"""

# Links with a non-web scheme (mailto:, intent:, tel:) never reach request routing,
# so the page hands them to the host binding instead.
external_link_template = """(function() {{
  if (window.{initFlag}) return;
  window.{initFlag} = true;

  var PAGE_SCHEMES = {pageSchemes};

  document.addEventListener('click', function(e) {{
    if (typeof window.{binding} !== 'function') return;
    var link = e.target && e.target.closest ? e.target.closest('a[href]') : null;
    if (!link) return;
    var scheme = link.href.split(':')[0].toLowerCase();
    if (PAGE_SCHEMES.indexOf(scheme) >= 0) return;
    e.preventDefault();
    e.stopPropagation();
    window.{binding}(link.href);
  }}, true);
}})();
"""

EXTERNAL_LINK_BINDING = "xreadonlyOpenExternal"
EXTERNAL_LINK_FLAG = "__xreadonly_links"

# Schemes the page loads itself; links with any other scheme are handed off.
PAGE_SCHEMES = ("http", "https", "about", "blob", "data", "javascript")


def build_content_script(table: PolicyTable) -> str:
    """Compile the in-page enforcer for the controls of `table`."""
    if not table.controls:
        logger.warning("Policy table has no controls; the content script will not suppress anything.")
    return content_script_template.format(
        initFlag=INIT_FLAG,
        hideSelectors=json.dumps(list(table.hide_selectors)),
        disableSelectors=json.dumps(list(table.disable_selectors)),
        disabledOpacity=DISABLED_OPACITY,
    )


def build_stylesheet(table: PolicyTable) -> str:
    """
    CSS counterpart of the content script. It applies from the moment it is injected,
    before the first enforcement pass runs.
    """
    rules = []
    if table.hide_selectors:
        rules.append(",\n".join(table.hide_selectors) + " {\n  display: none !important;\n}")
    if table.disable_selectors:
        rules.append(
            ",\n".join(table.disable_selectors)
            + f" {{\n  pointer-events: none !important;\n  opacity: {DISABLED_OPACITY} !important;\n}}"
        )
    return "\n\n".join(rules) + ("\n" if rules else "")


def escape_js_string(value: str) -> str:
    """Escape text for a single-quoted JavaScript string literal."""
    return (
        value
        .replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "")
    )


def build_css_injection_script(css: str) -> str:
    """JavaScript that adds `css` to the page in a single <style> element."""
    return css_injection_template.format(styleId=STYLE_ELEMENT_ID, css=escape_js_string(css))


def build_external_link_script(binding: str = EXTERNAL_LINK_BINDING) -> str:
    """JavaScript that hands clicks on non-web links (mailto:, intent:, ...) to `binding`."""
    return external_link_template.format(
        initFlag=EXTERNAL_LINK_FLAG,
        binding=binding,
        pageSchemes=json.dumps(list(PAGE_SCHEMES)),
    )


def load_asset(path: str) -> str:
    """
    Read a text asset. Returns an empty string if the file cannot be read, so the host
    simply skips that injection.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except OSError as e:
        logger.error(f"Failed to load asset {path}: {e}")
        return ""
