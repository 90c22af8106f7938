"""Parsing of review verdicts and issues embedded in agent output.

Agents report their judgement inside ``<review ...>...</review>`` markers.
Two shapes are in use:

* self-review markers, where the body is just the keyword::

      <review>PASS</review>

* critique blocks, where the verdict is an attribute and the body holds
  markdown sections::

      <review status="needs_revision" iteration="1" reviewer="codex">
      ## Summary
      ...
      ## Issues
      ### Missing error handling
      - **Severity**: High
      - **Description**: Retry policy is not specified
      - **Location**: specs/retry.md
      ## Verdict
      NEEDS_REVISION
      </review>

Everything in this module is pure; the workflow decides what an UNKNOWN
verdict means in its context.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import StrEnum

logger = logging.getLogger(__name__)


class Verdict(StrEnum):
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


class Severity(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class Issue:
    severity: Severity
    description: str
    location: str | None = None


@dataclass(frozen=True)
class Review:
    """A parsed review. Immutable once produced."""

    verdict: Verdict
    issues: tuple[Issue, ...] = ()
    raw_text: str = ""

    @property
    def requests_changes(self) -> bool:
        return self.verdict in (Verdict.NEEDS_REVISION, Verdict.REJECTED)

    @property
    def is_consistent(self) -> bool:
        """False when changes are requested without naming a single issue."""
        return not (self.requests_changes and not self.issues)


_REVIEW_BLOCK_RE = re.compile(
    r"<\s*review\b(?P<attrs>[^>]*)>(?P<body>.*?)<\s*/\s*review\s*>",
    re.IGNORECASE | re.DOTALL,
)
_STATUS_ATTR_RE = re.compile(
    r"""\bstatus\s*=\s*(?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<bare>[^\s"'>]+))""",
    re.IGNORECASE,
)
_VERDICT_LINE_RE = re.compile(r"^\s*(?:#+\s*)?\**verdict\**\s*:?\**\s*(?P<value>.*)$", re.IGNORECASE)
_SECTION_RE = re.compile(r"^##\s+(?P<title>.+?)\s*$", re.MULTILINE)
_ISSUE_HEADING_RE = re.compile(r"^###\s+(?P<title>.+?)\s*$", re.MULTILINE)
_FIELD_RE = re.compile(
    r"^\s*(?:[-*]\s*)?\*\*(?P<field>severity|description|location)\*\*\s*:\s*(?P<value>.+?)\s*$",
    re.IGNORECASE | re.MULTILINE,
)
_BULLET_RE = re.compile(
    r"^\s*[-*]\s+"
    r"(?:\[(?P<bracket>[A-Za-z]+)\]\s*:?|\*\*(?P<bold>[A-Za-z]+)\*\*\s*:?|(?P<plain>[A-Za-z]+)\s*:)"
    r"\s*(?P<desc>.+?)\s*$"
)
_LOCATION_SUFFIX_RE = re.compile(r"\s*\((?:location|at)\s*:\s*(?P<location>[^)]+)\)\s*$", re.IGNORECASE)

# Separator-free, longest first so prefixes do not shadow them.
_VERDICT_KEYWORDS: list[tuple[str, Verdict]] = [
    ("needsrevision", Verdict.NEEDS_REVISION),
    ("needschanges", Verdict.NEEDS_REVISION),
    ("approved", Verdict.APPROVED),
    ("approve", Verdict.APPROVED),
    ("rejected", Verdict.REJECTED),
    ("reject", Verdict.REJECTED),
    ("unknown", Verdict.UNKNOWN),
    ("pass", Verdict.APPROVED),
]

_SEVERITY_WORDS: dict[str, Severity] = {
    "critical": Severity.HIGH,
    "high": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "moderate": Severity.MEDIUM,
    "low": Severity.LOW,
    "minor": Severity.LOW,
}

_FIELD_NAMES = {"severity", "description", "location"}


def _normalize(text: str) -> str:
    cleaned = text.strip().strip("*`[]().:\"'").strip().lower()
    return re.sub(r"[\s-]+", "_", cleaned)


def verdict_from_keyword(text: str, *, exact: bool = False) -> Verdict:
    """Map a verdict keyword (``PASS``, ``needs revision``...) to a Verdict."""
    # NEEDS_REVISION, needs-revision and NeedsRevision all compare equal
    normalized = re.sub(r"[\s_-]+", "", _normalize(text))
    for keyword, verdict in _VERDICT_KEYWORDS:
        if normalized == keyword:
            return verdict
        if not exact and normalized.startswith(keyword):
            return verdict
    return Verdict.UNKNOWN


def severity_from_word(text: str) -> Severity | None:
    return _SEVERITY_WORDS.get(_normalize(text))


def _status_attribute(attrs: str) -> str | None:
    match = _STATUS_ATTR_RE.search(attrs)
    if not match:
        return None
    return match.group("dq") or match.group("sq") or match.group("bare")


def _verdict_from_body(body: str) -> Verdict:
    verdict = verdict_from_keyword(body, exact=True)
    if verdict != Verdict.UNKNOWN:
        return verdict

    lines = body.splitlines()
    for idx, line in enumerate(lines):
        match = _VERDICT_LINE_RE.match(line)
        if not match:
            continue
        value = match.group("value").strip()
        if not value:
            # "## Verdict" heading: the keyword sits on the next non-empty line
            value = next((ln.strip() for ln in lines[idx + 1 :] if ln.strip()), "")
        verdict = verdict_from_keyword(value)
        if verdict != Verdict.UNKNOWN:
            return verdict
    return Verdict.UNKNOWN


def _section(body: str, title: str) -> str | None:
    """Return the text of a ``## <title>`` section, or None when absent."""
    matches = list(_SECTION_RE.finditer(body))
    for idx, match in enumerate(matches):
        if match.group("title").strip().lower() == title:
            end = matches[idx + 1].start() if idx + 1 < len(matches) else len(body)
            return body[match.end() : end]
    return None


def _structured_issues(text: str) -> list[Issue] | None:
    headings = list(_ISSUE_HEADING_RE.finditer(text))
    if not headings:
        return None

    candidates_seen = False
    issues: list[Issue] = []
    for idx, heading in enumerate(headings):
        end = headings[idx + 1].start() if idx + 1 < len(headings) else len(text)
        chunk = text[heading.end() : end]
        fields = {m.group("field").lower(): m.group("value").strip() for m in _FIELD_RE.finditer(chunk)}
        if not fields:
            continue
        candidates_seen = True
        severity = severity_from_word(fields.get("severity", ""))
        description = fields.get("description") or heading.group("title").strip()
        if severity is None:
            logger.warning("Dropping issue without recognizable severity: %s", description)
            continue
        issues.append(Issue(severity=severity, description=description, location=fields.get("location")))

    return issues if candidates_seen else None


def _bullet_issues(text: str) -> list[Issue]:
    issues: list[Issue] = []
    for line in text.splitlines():
        match = _BULLET_RE.match(line)
        if not match:
            continue
        word = match.group("bracket") or match.group("bold") or match.group("plain")
        if word.lower() in _FIELD_NAMES:
            continue
        description = match.group("desc")
        severity = severity_from_word(word)
        if severity is None:
            logger.warning("Dropping issue without recognizable severity: %s", line.strip())
            continue
        location = None
        loc_match = _LOCATION_SUFFIX_RE.search(description)
        if loc_match:
            location = loc_match.group("location").strip()
            description = description[: loc_match.start()].rstrip()
        issues.append(Issue(severity=severity, description=description, location=location))
    return issues


def parse_issues(body: str) -> list[Issue]:
    """Extract issues from a review body.

    Looks in the ``## Issues`` section when there is one, else in the whole
    body. ``###`` headed blocks with bold fields take precedence over
    severity-tagged bullet lines.
    """
    scope = _section(body, "issues")
    if scope is None:
        scope = body
    structured = _structured_issues(scope)
    if structured is not None:
        return structured
    return _bullet_issues(scope)


def parse_review(text: str) -> Review:
    """Parse the last complete review marker in ``text``.

    Returns a Review with verdict UNKNOWN when no marker is present or the
    marker carries no recognizable keyword.
    """
    blocks = list(_REVIEW_BLOCK_RE.finditer(text))
    if not blocks:
        return Review(verdict=Verdict.UNKNOWN, raw_text=text)

    block = blocks[-1]
    body = block.group("body")
    status = _status_attribute(block.group("attrs"))
    verdict = verdict_from_keyword(status) if status else Verdict.UNKNOWN
    if verdict == Verdict.UNKNOWN:
        verdict = _verdict_from_body(body)

    return Review(verdict=verdict, issues=tuple(parse_issues(body)), raw_text=text)


def render_marker(verdict: Verdict) -> str:
    """Canonical marker text for a bare verdict."""
    return f'<review status="{verdict.value}"></review>'


def render_review(review: Review, *, iteration: int | None = None, reviewer: str | None = None) -> str:
    """Render a review as a canonical critique block."""
    attrs = [f'status="{review.verdict.value}"']
    if iteration is not None:
        attrs.append(f'iteration="{iteration}"')
    if reviewer:
        attrs.append(f'reviewer="{reviewer}"')

    lines = [f"<review {' '.join(attrs)}>", "", "## Issues", ""]
    if not review.issues:
        lines.append("(none)")
        lines.append("")
    for idx, issue in enumerate(review.issues, start=1):
        lines.append(f"### Issue {idx}")
        lines.append(f"- **Severity**: {issue.severity.value.capitalize()}")
        lines.append(f"- **Description**: {issue.description}")
        if issue.location:
            lines.append(f"- **Location**: {issue.location}")
        lines.append("")
    lines.extend(["## Verdict", "", review.verdict.value.upper(), "", "</review>"])
    return "\n".join(lines)
