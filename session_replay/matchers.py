"""Element selector and page pattern matching for privacy exclusions."""

import fnmatch
import re
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from session_replay.models import ElementInfo

# tag or *, then any run of #id, .class, [attr] / [attr=value]
_TAG_RE = re.compile(r"^(\*|[a-zA-Z][a-zA-Z0-9-]*)")
_PART_RE = re.compile(
    r"""
    \#(?P<id>[\w-]+)
    | \.(?P<cls>[\w-]+)
    | \[\s*(?P<attr>[\w-]+)\s*(?:=\s*(?P<val>"[^"]*"|'[^']*'|[^\]\s]+)\s*)?\]
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class CompoundSelector:
    tag: str | None = None
    id: str | None = None
    classes: frozenset = frozenset()
    attributes: tuple = field(default_factory=tuple)  # (name, value | None)

    def matches(self, element: ElementInfo) -> bool:
        if self.tag is not None and element.tag.lower() != self.tag:
            return False
        if self.id is not None and element.id != self.id:
            return False
        if not self.classes.issubset(set(element.classes)):
            return False
        for name, value in self.attributes:
            if name not in element.attributes:
                return False
            if value is not None and str(element.attributes[name]) != value:
                return False
        return True


def parse_selector(text: str) -> list[CompoundSelector]:
    """Parse a comma-separated selector list.

    Raises ValueError for syntax outside the supported subset.
    """
    selectors = []
    for chunk in text.split(","):
        chunk = chunk.strip()
        if not chunk:
            raise ValueError(f"empty selector in {text!r}")

        tag = None
        pos = 0
        m = _TAG_RE.match(chunk)
        if m:
            tag = None if m.group(1) == "*" else m.group(1).lower()
            pos = m.end()

        elem_id = None
        classes = set()
        attributes = []
        while pos < len(chunk):
            m = _PART_RE.match(chunk, pos)
            if not m:
                raise ValueError(f"unsupported selector syntax: {chunk!r}")
            if m.group("id"):
                elem_id = m.group("id")
            elif m.group("cls"):
                classes.add(m.group("cls"))
            else:
                value = m.group("val")
                if value is not None and value[:1] in ("'", '"'):
                    value = value[1:-1]
                attributes.append((m.group("attr"), value))
            pos = m.end()

        selectors.append(
            CompoundSelector(
                tag=tag,
                id=elem_id,
                classes=frozenset(classes),
                attributes=tuple(attributes),
            )
        )
    return selectors


class ElementMatcher:
    """Matches an element, or any of its ancestors, against a selector list."""

    def __init__(self, selectors):
        self._selectors: list[CompoundSelector] = []
        for text in selectors:
            self._selectors.extend(parse_selector(text))

    def __bool__(self):
        return bool(self._selectors)

    def matches(self, element: ElementInfo | None) -> bool:
        if element is None or not self._selectors:
            return False
        for candidate in (element, *element.ancestors):
            if any(sel.matches(candidate) for sel in self._selectors):
                return True
        return False


class PageMatcher:
    """Matches page URLs against path prefixes or shell-style globs."""

    def __init__(self, patterns):
        self._patterns = [p for p in patterns if p]

    def __bool__(self):
        return bool(self._patterns)

    def matches(self, url: str | None) -> bool:
        if not url or not self._patterns:
            return False
        path = urlsplit(url).path or "/"
        for pattern in self._patterns:
            if path.startswith(pattern):
                return True
            if fnmatch.fnmatchcase(url, pattern) or fnmatch.fnmatchcase(path, pattern):
                return True
        return False
