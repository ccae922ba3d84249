from __future__ import annotations
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from bs4 import BeautifulSoup, Doctype, Tag

from .models import HeadingCounts

# ------------------ observations ------------------

HEADING_TAGS = ("h1", "h2", "h3", "h4", "h5", "h6")
OBSERVED_TAGS = {"title", "a", "form", "input", *HEADING_TAGS}

DOCTYPE = "!doctype"

@dataclass
class Observation:
    """One interesting node seen during the document walk."""
    tag: str
    attrs: Dict[str, str] = field(default_factory=dict)
    text: Optional[str] = None
    form: Optional[int] = None  # ordinal of the enclosing <form>, if any


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def _flatten_attrs(tag: Tag) -> Dict[str, str]:
    attrs = {}
    for key, value in tag.attrs.items():
        if isinstance(value, list):
            value = " ".join(value)
        attrs[key.lower()] = value
    return attrs


def observe(soup: BeautifulSoup) -> List[Observation]:
    """Walk the document once and return its observations in document order.

    The walk is iterative so deeply nested markup cannot exhaust the stack.
    Inputs carry the ordinal of their closest enclosing form so the login
    reducer can group them without walking the tree again.
    """
    observations: List[Observation] = []
    form_count = 0
    stack = [(child, None) for child in reversed(list(soup.children))]

    while stack:
        node, form = stack.pop()

        if isinstance(node, Doctype):
            observations.append(Observation(DOCTYPE, text=str(node)))
            continue
        if not isinstance(node, Tag):
            continue

        name = node.name.lower()
        if name in OBSERVED_TAGS:
            obs = Observation(name, _flatten_attrs(node), form=form)
            if name == "title":
                obs.text = node.get_text()
            elif name == "form":
                obs.form = form_count
                form = form_count
                form_count += 1
            observations.append(obs)

        for child in reversed(list(node.children)):
            stack.append((child, form))

    return observations

# ------------------ reducers ------------------

def extract_title(observations: Iterable[Observation]) -> str:
    for obs in observations:
        if obs.tag == "title":
            return (obs.text or "").strip()
    return ""


def count_headings(observations: Iterable[Observation]) -> HeadingCounts:
    counts = HeadingCounts()
    for obs in observations:
        if obs.tag in HEADING_TAGS:
            counts.increment(obs.tag)
    return counts


_DOCTYPE_PREFIX = re.compile(r"^\s*doctype\s+", re.IGNORECASE)
_DOCTYPE_VARIANTS = ("strict", "transitional", "frameset")


def classify_doctype(doctype: str) -> str:
    """Map a doctype declaration to an HTML version label."""
    dt = _DOCTYPE_PREFIX.sub("", doctype).strip().lower()

    if dt == "html":
        return "HTML5"

    for family, label in (("html 4.01", "HTML 4.01"), ("xhtml 1.0", "XHTML 1.0")):
        if family in dt:
            for variant in _DOCTYPE_VARIANTS:
                if variant in dt:
                    return f"{label} {variant.capitalize()}"

    if "xhtml 1.1" in dt:
        return "XHTML 1.1"
    if "xhtml" in dt:
        return "XHTML"
    if "html" in dt:
        return "HTML 4.01"
    # Unrecognized declaration; treat like a missing doctype
    return "HTML5"


def detect_html_version(observations: Iterable[Observation]) -> str:
    for obs in observations:
        if obs.tag == DOCTYPE:
            return classify_doctype(obs.text or "")
    return "HTML5"

# ------------------ login form heuristic ------------------

LOGIN_FORM_PATTERNS = (
    "login", "signin", "sign-in", "auth", "authentication",
    "user", "account", "credential", "password", "login-form",
    "signin-form", "auth-form", "user-form",
)

USERNAME_FIELD_PATTERNS = (
    "username", "user", "email", "login", "account",
    "userid", "user_id", "user-id", "mail",
)

LOGIN_INPUT_PATTERNS = (
    "password", "username", "user", "email", "login",
    "signin", "auth", "credential", "account",
)


def _contains_any(value: str, patterns: Iterable[str]) -> bool:
    value = value.lower()
    return any(p in value for p in patterns)


def is_login_form_attrs(attrs: Dict[str, str]) -> bool:
    """True if the form's id, class or name looks like an authentication form."""
    return any(_contains_any(attrs.get(key, ""), LOGIN_FORM_PATTERNS) for key in ("id", "class", "name"))


def is_username_input(attrs: Dict[str, str]) -> bool:
    if attrs.get("type", "").lower() == "email":
        return True
    return any(_contains_any(attrs.get(key, ""), USERNAME_FIELD_PATTERNS) for key in ("name", "id"))


def is_login_input(attrs: Dict[str, str]) -> bool:
    """True for a standalone input that on its own signals a login control."""
    if attrs.get("type", "").lower() in ("password", "email"):
        return True
    return any(_contains_any(attrs.get(key, ""), LOGIN_INPUT_PATTERNS) for key in ("name", "id"))


def detect_login_form(observations: Iterable[Observation]) -> bool:
    password_forms = set()
    username_forms = set()

    for obs in observations:
        if obs.tag == "form":
            if is_login_form_attrs(obs.attrs):
                return True
        elif obs.tag == "input":
            if is_login_input(obs.attrs):
                return True
            if obs.form is not None:
                if obs.attrs.get("type", "").lower() == "password":
                    password_forms.add(obs.form)
                if is_username_input(obs.attrs):
                    username_forms.add(obs.form)

    return bool(password_forms & username_forms)

# ------------------ links ------------------

SKIPPED_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:")


def collect_hrefs(observations: Iterable[Observation]) -> List[str]:
    """Anchor hrefs in document order, minus fragment-only and non-navigational targets."""
    hrefs = []
    for obs in observations:
        if obs.tag != "a":
            continue
        href = (obs.attrs.get("href") or "").strip()
        if not href or href.lower().startswith(SKIPPED_HREF_PREFIXES):
            continue
        hrefs.append(href)
    return hrefs
