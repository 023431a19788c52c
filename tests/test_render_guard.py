from __future__ import annotations

from app.cache.render_guard import RenderSkipGuard


def _rendered_guard() -> RenderSkipGuard:
    guard = RenderSkipGuard()
    guard.mark_rendered(
        "progress",
        page=2,
        search="dark",
        item_count=20,
        sort_key="name",
        direction="asc",
    )
    return guard


def test_identical_view_is_skipped() -> None:
    guard = _rendered_guard()

    assert guard.should_skip(
        "progress",
        page=2,
        search="dark",
        item_count=20,
        sort_key="name",
        direction="asc",
    )


def test_any_changed_dimension_forces_render() -> None:
    guard = _rendered_guard()
    base = dict(page=2, search="dark", item_count=20, sort_key="name", direction="asc")

    for change in (
        {"page": 3},
        {"search": "dar"},
        {"item_count": 19},
        {"sort_key": "progress"},
        {"direction": "desc"},
    ):
        assert not guard.should_skip("progress", **{**base, **change}), change


def test_unrendered_or_cleared_tab_is_never_skipped() -> None:
    guard = _rendered_guard()

    assert not guard.should_skip("movies", page=1, search="", item_count=0)

    guard.clear("progress")
    assert not guard.should_skip(
        "progress",
        page=2,
        search="dark",
        item_count=20,
        sort_key="name",
        direction="asc",
    )


def test_clear_all_resets_every_tab() -> None:
    guard = _rendered_guard()
    guard.mark_rendered("movies", page=1, search="", item_count=3)

    guard.clear_all()

    assert not guard.state("movies").has_content
    assert guard.state("progress").rendered_count == 0
