import logging

import pytest

from changeloop.verdict import (
    Issue,
    Review,
    Severity,
    Verdict,
    parse_review,
    render_marker,
    render_review,
)

from conftest import APPROVED_REVIEW, NEEDS_REVISION_REVIEW


@pytest.mark.parametrize("verdict", list(Verdict))
def test_marker_round_trip(verdict: Verdict) -> None:
    assert parse_review(render_marker(verdict)).verdict == verdict


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("<review>PASS</review>", Verdict.APPROVED),
        ("<review>NEEDS_REVISION</review>", Verdict.NEEDS_REVISION),
        ("< REVIEW >  needs revision \n</review >", Verdict.NEEDS_REVISION),
        ("<Review>Rejected</Review>", Verdict.REJECTED),
        ("<review>NeedsRevision</review>", Verdict.NEEDS_REVISION),
        ('<review status="NeedsRevision">\n## Issues\n- [High] Gap\n</review>', Verdict.NEEDS_REVISION),
        ('<review status="Approved"></review>', Verdict.APPROVED),
        ("<review>maybe?</review>", Verdict.UNKNOWN),
    ],
)
def test_self_review_markers(text: str, expected: Verdict) -> None:
    assert parse_review(text).verdict == expected


def test_no_marker_is_unknown() -> None:
    review = parse_review("I reviewed the files and they look fine.")
    assert review.verdict == Verdict.UNKNOWN
    assert review.issues == ()


def test_last_marker_wins() -> None:
    text = "First pass: <review>NEEDS_REVISION</review>\nFixed it.\n<review>PASS</review>"
    assert parse_review(text).verdict == Verdict.APPROVED


def test_unterminated_trailing_marker_is_ignored() -> None:
    text = "<review>PASS</review>\n<review status='rejected'> never closed"
    assert parse_review(text).verdict == Verdict.APPROVED


def test_critique_block_with_issues() -> None:
    review = parse_review(NEEDS_REVISION_REVIEW)

    assert review.verdict == Verdict.NEEDS_REVISION
    assert review.issues == (
        Issue(Severity.HIGH, "The spec never bounds the number of retries", "specs/retry-policy.md"),
        Issue(Severity.LOW, "The delay value is not given", "specs/retry-policy.md"),
    )
    assert review.is_consistent


def test_approved_block_has_no_issues() -> None:
    review = parse_review(APPROVED_REVIEW)
    assert review.verdict == Verdict.APPROVED
    assert review.issues == ()
    assert review.is_consistent


def test_verdict_section_used_without_status_attribute() -> None:
    text = "<review>\n## Issues\n- [High] Tasks skip the migration\n\n## Verdict\nNEEDS_REVISION\n</review>"
    review = parse_review(text)
    assert review.verdict == Verdict.NEEDS_REVISION
    assert review.issues == (Issue(Severity.HIGH, "Tasks skip the migration"),)


def test_bullet_issues_with_location_suffix() -> None:
    text = (
        '<review status="needs_revision">\n'
        "## Issues\n"
        "- [Critical] Session id is never stored (location: proposal.md)\n"
        "- Medium: Naming is inconsistent\n"
        "- **Low**: Typo in overview\n"
        "## Verdict\nNEEDS_REVISION\n"
        "</review>"
    )
    review = parse_review(text)
    assert review.issues == (
        Issue(Severity.HIGH, "Session id is never stored", "proposal.md"),
        Issue(Severity.MEDIUM, "Naming is inconsistent"),
        Issue(Severity.LOW, "Typo in overview"),
    )


def test_issue_without_severity_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    text = (
        '<review status="needs_revision">\n'
        "## Issues\n"
        "### Unclear scope\n"
        "- **Severity**: Urgent\n"
        "- **Description**: Scope is unclear\n"
        "### Missing tests\n"
        "- **Severity**: Medium\n"
        "- **Description**: No test layer\n"
        "</review>"
    )
    with caplog.at_level(logging.WARNING, logger="changeloop.verdict"):
        review = parse_review(text)

    assert review.issues == (Issue(Severity.MEDIUM, "No test layer"),)
    assert "Scope is unclear" in caplog.text


def test_needs_revision_without_issues_is_inconsistent() -> None:
    review = parse_review('<review status="needs_revision">\n## Verdict\nNEEDS_REVISION\n</review>')
    assert review.verdict == Verdict.NEEDS_REVISION
    assert not review.is_consistent


def test_render_review_parses_back() -> None:
    review = Review(
        verdict=Verdict.NEEDS_REVISION,
        issues=(
            Issue(Severity.HIGH, "Retries are unbounded", "specs/retry-policy.md"),
            Issue(Severity.MEDIUM, "No backoff"),
        ),
    )
    parsed = parse_review(render_review(review, iteration=2, reviewer="codex"))
    assert parsed.verdict == review.verdict
    assert parsed.issues == review.issues
