import pytest

from changeloop.errors import ValidationFailedError
from changeloop.storage import PROPOSAL, TASKS, ChangeStorage, parse_affected_specs
from changeloop.validation import validate_change

from conftest import PROPOSAL_MD, SPEC_MD, TASKS_MD


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("- Affected specs: retry-policy", ["retry-policy"]),
        ("- **Affected specs:** `auth`, [session-store]", ["auth", "session-store"]),
        ("Affected specs: specs/auth.md, auth", ["auth"]),
        ("- Affected specs: none", []),
        ("- Affected specs: N/A", []),
        ("No spec line here", []),
    ],
)
def test_parse_affected_specs(line: str, expected: list[str]) -> None:
    assert parse_affected_specs(f"# Title\n\n## Impact\n{line}\n") == expected


def test_storage_paths(tmp_path) -> None:
    storage = ChangeStorage(tmp_path, "add-retries")

    assert storage.path(PROPOSAL) == storage.change_dir / "proposal.md"
    assert storage.path("specs/retry-policy") == storage.change_dir / "specs" / "retry-policy.md"
    with pytest.raises(ValueError):
        storage.path("notes")
    with pytest.raises(ValueError):
        storage.path("specs/../escape")


def test_required_artifacts_follow_proposal(tmp_path) -> None:
    storage = ChangeStorage(tmp_path, "add-retries")
    assert storage.required_artifacts() == [PROPOSAL, TASKS]

    storage.write(PROPOSAL, PROPOSAL_MD)
    assert storage.required_artifacts() == [PROPOSAL, "specs/retry-policy", TASKS]


def _complete(tmp_path) -> ChangeStorage:
    storage = ChangeStorage(tmp_path, "add-retries")
    storage.write(PROPOSAL, PROPOSAL_MD)
    storage.write("specs/retry-policy", SPEC_MD)
    storage.write(TASKS, TASKS_MD)
    return storage


def test_complete_change_is_valid(tmp_path) -> None:
    result = validate_change(_complete(tmp_path))
    assert result.ok
    assert result.warnings == []
    result.raise_for_errors()


def test_missing_proposal(tmp_path) -> None:
    result = validate_change(ChangeStorage(tmp_path, "add-retries"))
    assert [str(e) for e in result.errors] == ["proposal: missing"]


def test_missing_and_empty_artifacts(tmp_path) -> None:
    storage = ChangeStorage(tmp_path, "add-retries")
    storage.write(PROPOSAL, PROPOSAL_MD.replace("retry-policy", "retry-policy, backoff"))
    storage.write("specs/retry-policy", "   \n")

    result = validate_change(storage)

    assert [str(e) for e in result.errors] == [
        "specs/retry-policy: empty",
        "specs/backoff: listed in proposal but missing",
        "tasks: missing",
    ]
    with pytest.raises(ValidationFailedError) as exc_info:
        result.raise_for_errors()
    assert len(exc_info.value.problems) == 3


def test_proposal_without_heading(tmp_path) -> None:
    storage = _complete(tmp_path)
    storage.write(PROPOSAL, PROPOSAL_MD.replace("# Add retries", "Add retries").replace("## ", ""))

    result = validate_change(storage)
    assert "proposal: no markdown heading" in [str(e) for e in result.errors]


def test_unlisted_spec_is_a_warning(tmp_path) -> None:
    storage = _complete(tmp_path)
    storage.write("specs/leftover", SPEC_MD)

    result = validate_change(storage)
    assert result.ok
    assert [str(w) for w in result.warnings] == ["specs/leftover: not listed in proposal's affected specs"]


def test_invalid_task_graph_is_an_error(tmp_path) -> None:
    storage = _complete(tmp_path)
    storage.write(TASKS, TASKS_MD.replace('depends_on: []', 'depends_on: ["2.1"]'))

    result = validate_change(storage)
    assert not result.ok
    assert "cycle" in str(result.errors[0])


def test_task_referencing_unknown_spec(tmp_path) -> None:
    storage = _complete(tmp_path)
    storage.write(TASKS, TASKS_MD.replace("spec_ref: retry-policy\n", "spec_ref: specs/backoff.md\n"))

    result = validate_change(storage)
    assert [str(e) for e in result.errors] == ["tasks: task 1.1 references unknown spec 'specs/backoff.md'"]
