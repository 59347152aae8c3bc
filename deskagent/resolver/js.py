"""Page-side JavaScript for element resolution and element operations.

Each builder returns a self-contained expression for ``Runtime.evaluate``.
Arguments are passed as one JSON object so selector text never needs manual
escaping.
"""

from __future__ import annotations

import json
from typing import Any

REF_ATTRIBUTE = "data-deskagent-ref"

_LOCATE_FN = r"""
(args) => {
  const cssEscape = (value) => {
    try {
      if (globalThis.CSS && typeof globalThis.CSS.escape === 'function') return globalThis.CSS.escape(String(value));
    } catch (e) {
      // ignore
    }
    return String(value).replace(/(["'\\])/g, '\\$1');
  };
  const safeQuery = (root, sel) => {
    try { return root.querySelector(sel); } catch (e) { return null; }
  };
  const collectRoots = () => {
    const roots = [document];
    const queue = [document];
    let scanned = 0;
    while (queue.length && roots.length < 60 && scanned < 4000) {
      const root = queue.shift();
      const all = root.querySelectorAll ? root.querySelectorAll('*') : [];
      for (const el of all) {
        scanned++;
        if (el.shadowRoot && !roots.includes(el.shadowRoot)) {
          roots.push(el.shadowRoot);
          queue.push(el.shadowRoot);
        }
        if (scanned >= 4000) break;
      }
    }
    return roots;
  };
  const byXPath = (xp) => {
    try {
      return document.evaluate(xp, document, null, XPathResult.FIRST_ORDERED_NODE_TYPE, null).singleNodeValue;
    } catch (e) {
      return null;
    }
  };
  const byAria = (label) => {
    const m = label.match(/^(.+?)\[role="?([^"\]]+)"?\]$/);
    const text = (m ? m[1] : label).trim();
    const role = m ? m[2].trim().toLowerCase() : null;
    if (!text) return null;
    let sel = `[aria-label="${cssEscape(text)}"]`;
    if (role) sel += `[role="${cssEscape(role)}"]`;
    const exact = safeQuery(document, sel);
    if (exact) return exact;
    const lower = text.toLowerCase();
    const candidates = Array.from(document.querySelectorAll('[aria-label], [aria-labelledby], [role]'));
    return candidates.find((el) => {
      const elRole = (el.getAttribute('role') || '').toLowerCase();
      if (role && elRole !== role) return false;
      const ariaLabel = (el.getAttribute('aria-label') || '').toLowerCase();
      if (ariaLabel && ariaLabel.includes(lower)) return true;
      const labelledBy = el.getAttribute('aria-labelledby');
      if (labelledBy) {
        const node = document.getElementById(labelledBy);
        if (node && (node.textContent || '').toLowerCase().includes(lower)) return true;
      }
      return !role && !!elRole && elRole.includes(lower);
    }) || null;
  };
  const byText = (text) => {
    const needle = String(text || '').trim().toLowerCase();
    if (!needle || !document.body) return null;
    const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_TEXT, null);
    let node;
    while ((node = walker.nextNode())) {
      const value = (node.textContent || '').trim().toLowerCase();
      if (value && value.includes(needle) && node.parentElement) return node.parentElement;
    }
    return null;
  };
  const byPierce = (sel) => {
    for (const root of collectRoots()) {
      const el = safeQuery(root, sel);
      if (el) return el;
    }
    return null;
  };
  const find = () => {
    switch (args.strategy) {
      case 'xpath': return byXPath(args.query);
      case 'aria': return byAria(args.query);
      case 'text': return byText(args.query);
      case 'pierce': return byPierce(args.query);
      default: return safeQuery(document, args.query);
    }
  };
  const ownPointer = (el) => {
    try {
      if (el.style && el.style.cursor === 'pointer') return true;
      if (getComputedStyle(el).cursor !== 'pointer') return false;
      // Computed cursor inherits: only count it where the element itself declares it.
      const parent = el.parentElement;
      return !parent || getComputedStyle(parent).cursor !== 'pointer';
    } catch (e) {
      return false;
    }
  };
  const clickableReason = (el, cfg) => {
    const tag = (el.tagName || '').toLowerCase();
    if (cfg.tags.includes(tag)) return 'tag';
    const role = (el.getAttribute('role') || '').toLowerCase();
    if (role && cfg.roles.includes(role)) return 'role';
    if (el.onclick || el.hasAttribute('onclick')) return 'onclick';
    if (ownPointer(el)) return 'cursor';
    const cls = typeof el.className === 'string' ? el.className.toLowerCase() : '';
    if (cls && cfg.classKeywords.some((k) => cls.includes(k))) return 'class';
    for (const attr of Array.from(el.attributes || [])) {
      if (!attr.name.startsWith('data-') || attr.name === args.refAttr) continue;
      const value = String(attr.value || '').toLowerCase();
      if (value && cfg.dataKeywords.some((k) => value.includes(k))) return 'data';
    }
    return null;
  };
  const clickableAncestor = (el, cfg) => {
    let current = el;
    let depth = 0;
    while (current && current.nodeType === 1 && depth < cfg.maxDepth) {
      const why = clickableReason(current, cfg);
      if (why) return { el: current, why };
      current = current.parentElement;
      depth++;
    }
    return null;
  };
  const isVisible = (el) => {
    const rect = el.getBoundingClientRect();
    if (!(rect.width > 0 && rect.height > 0)) return false;
    const style = getComputedStyle(el);
    if (style.display === 'none' || style.visibility === 'hidden') return false;
    return parseFloat(style.opacity || '1') !== 0;
  };

  const matched = find();
  if (!matched || matched.nodeType !== 1) return { found: false };
  let target = matched;
  let reason = null;
  if (args.clickable) {
    const hit = clickableAncestor(matched, args.clickable);
    if (hit) {
      target = hit.el;
      reason = hit.why;
    }
  }
  if (args.scroll) {
    const r = target.getBoundingClientRect();
    const inView = r.top >= 0 && r.left >= 0 && r.bottom <= window.innerHeight && r.right <= window.innerWidth;
    if (!inView) {
      try { target.scrollIntoView({ block: 'center', inline: 'center' }); } catch (e) {}
    }
  }
  target.setAttribute(args.refAttr, args.ref);
  const rect = target.getBoundingClientRect();
  return {
    found: true,
    tagName: (target.tagName || '').toLowerCase(),
    originalTag: (matched.tagName || '').toLowerCase(),
    usedAncestor: target !== matched,
    clickableReason: reason,
    id: target.id || null,
    text: String(target.innerText || target.textContent || '').trim().slice(0, 80),
    bounds: { x: rect.x, y: rect.y, width: rect.width, height: rect.height },
    visible: isVisible(target),
  };
}
"""

_TYPE_FN = r"""
(args) => {
  const el = document.querySelector(args.selector);
  if (!el) return { ok: false, reason: 'element not found' };
  const active = document.activeElement;
  if (active && active !== document.body && active !== el && typeof active.blur === 'function') {
    try { active.blur(); } catch (e) {}
  }
  try { el.focus({ preventScroll: true }); } catch (e) { try { el.focus(); } catch (e2) {} }
  const tag = (el.tagName || '').toLowerCase();
  const editable = el.isContentEditable || el.getAttribute('contenteditable') === 'true';
  if (editable || !('value' in el)) {
    el.textContent = args.text;
  } else {
    const proto = tag === 'textarea' ? HTMLTextAreaElement.prototype : HTMLInputElement.prototype;
    const setter = Object.getOwnPropertyDescriptor(proto, 'value');
    if (setter && setter.set && (tag === 'input' || tag === 'textarea')) {
      setter.set.call(el, args.text);
    } else {
      el.value = args.text;
    }
  }
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  return { ok: true, elementType: editable ? 'contenteditable' : tag, focused: document.activeElement === el };
}
"""

_FOCUS_FN = r"""
(args) => {
  let target = args.selector ? document.querySelector(args.selector) : null;
  if (!target && args.anyFocusable) {
    const active = document.activeElement;
    if (active && active !== document.body) return true;
    target = document.querySelector('input, textarea, [contenteditable="true"], [tabindex]');
  }
  if (!target || typeof target.focus !== 'function') return false;
  try { target.focus({ preventScroll: true }); } catch (e) { target.focus(); }
  return document.activeElement === target;
}
"""

_SCROLL_INTO_VIEW_FN = r"""
(args) => {
  const el = document.querySelector(args.selector);
  if (!el) return false;
  el.scrollIntoView({ behavior: args.smooth ? 'smooth' : 'auto', block: 'center' });
  return true;
}
"""

_SCROLL_ELEMENT_FN = r"""
(args) => {
  const el = document.querySelector(args.selector);
  if (!el) return false;
  el.scrollTo(args.x, args.y);
  return true;
}
"""


def _call(fn_source: str, args: dict[str, Any]) -> str:
    return f"({fn_source.strip()})({json.dumps(args, ensure_ascii=False)})"


def ref_selector(ref: str) -> str:
    return f'[{REF_ATTRIBUTE}="{ref}"]'


def build_locate_js(
    strategy: str,
    query: str,
    *,
    ref: str,
    clickable: dict[str, Any] | None = None,
    scroll: bool = False,
) -> str:
    return _call(
        _LOCATE_FN,
        {
            "strategy": strategy,
            "query": query,
            "ref": ref,
            "refAttr": REF_ATTRIBUTE,
            "clickable": clickable,
            "scroll": bool(scroll),
        },
    )


def build_type_js(selector: str, text: str) -> str:
    return _call(_TYPE_FN, {"selector": selector, "text": text})


def build_focus_js(selector: str | None, *, any_focusable: bool = False) -> str:
    return _call(_FOCUS_FN, {"selector": selector, "anyFocusable": bool(any_focusable)})


def build_scroll_into_view_js(selector: str, *, smooth: bool = False) -> str:
    return _call(_SCROLL_INTO_VIEW_FN, {"selector": selector, "smooth": bool(smooth)})


def build_scroll_element_js(selector: str, x: float, y: float) -> str:
    return _call(_SCROLL_ELEMENT_FN, {"selector": selector, "x": x, "y": y})


__all__ = [
    "REF_ATTRIBUTE",
    "build_focus_js",
    "build_locate_js",
    "build_scroll_element_js",
    "build_scroll_into_view_js",
    "build_type_js",
    "ref_selector",
]
