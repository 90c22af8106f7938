import sys

import pytest

from changeloop.errors import SessionCommandFailed, SessionListingUnparsable, SessionNotFound
from changeloop.sessions import SessionResolver, find_session_index

TARGET = "9c41d2aa-7b1e-4f0c-8d3e-2a6b5c4d3e2f"


def _listing(ids: list[str]) -> str:
    lines = [f"Available sessions for this project ({len(ids)}):"]
    for idx, session_id in enumerate(ids, start=1):
        lines.append(f"  {idx}. Prompt preview number {idx} ({idx} hours ago) [{session_id}]")
    return "\n".join(lines) + "\n"


@pytest.mark.parametrize("position", [1, 2, 5])
def test_find_session_index_returns_position(position: int) -> None:
    ids = [f"0000000{i}-aaaa-bbbb-cccc-ddddeeeeffff" for i in range(1, 6)]
    ids[position - 1] = TARGET
    assert find_session_index(_listing(ids), TARGET) == position


def test_find_session_index_ignores_preview_brackets() -> None:
    listing = (
        "Available sessions for this project (2):\n"
        "  1. Fix [draft] proposal (1 day ago) [11111111-2222-3333-4444-555555555555]\n"
        f"  2. Revise [specs] (2 minutes ago) [{TARGET}]\n"
    )
    assert find_session_index(listing, TARGET) == 2


def test_find_session_index_missing_id() -> None:
    with pytest.raises(SessionNotFound):
        find_session_index(_listing(["11111111-2222-3333-4444-555555555555"]), TARGET)


def test_find_session_index_missing_header() -> None:
    listing = f"  1. Something (1 hour ago) [{TARGET}]\n"
    with pytest.raises(SessionListingUnparsable):
        find_session_index(listing, TARGET)


def test_find_session_index_listing_without_identifiers() -> None:
    listing = (
        "Available sessions for this project (2):\n"
        "  1. Draft proposal (2 hours ago)\n"
        "  2. Revise (1 min ago)\n"
    )
    with pytest.raises(SessionListingUnparsable):
        find_session_index(listing, TARGET)


@pytest.mark.asyncio
async def test_resolver_runs_listing_in_project_root(tmp_path) -> None:
    listing = _listing(["11111111-2222-3333-4444-555555555555", TARGET])
    (tmp_path / "listing.txt").write_text(listing)
    script = "import pathlib, sys; sys.stdout.write(pathlib.Path('listing.txt').read_text())"

    resolver = SessionResolver(tmp_path, command=[sys.executable, "-c", script], timeout=30)

    assert await resolver.resolve(TARGET) == 2


@pytest.mark.asyncio
async def test_resolver_non_zero_exit(tmp_path) -> None:
    script = "import sys; sys.stderr.write('not logged in'); sys.exit(3)"
    resolver = SessionResolver(tmp_path, command=[sys.executable, "-c", script], timeout=30)

    with pytest.raises(SessionCommandFailed, match="not logged in"):
        await resolver.resolve(TARGET)


@pytest.mark.asyncio
async def test_resolver_missing_command(tmp_path) -> None:
    resolver = SessionResolver(tmp_path, command=[str(tmp_path / "no-such-cli"), "--list-sessions"])

    with pytest.raises(SessionCommandFailed):
        await resolver.resolve(TARGET)
