"""Decides when a re-render of a cached tab would be a no-op."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class TabRenderState:
    """What was last rendered for one tab."""

    current_page: int = 1
    current_search: str = ""
    current_sort: str | None = None
    current_direction: str | None = None
    has_content: bool = False
    rendered_count: int = 0


class RenderSkipGuard:
    """Cheap heuristic comparing the requested view with the rendered one.

    Item counts are compared instead of item identities, so the check stays
    constant time; every tracked dimension must also be unchanged.
    """

    def __init__(self) -> None:
        self._states: dict[str, TabRenderState] = {}

    def state(self, tab: str) -> TabRenderState:
        return self._states.setdefault(tab, TabRenderState())

    def should_skip(
        self,
        tab: str,
        *,
        page: int,
        search: str,
        item_count: int,
        sort_key: str | None = None,
        direction: str | None = None,
        rendered_count: int | None = None,
    ) -> bool:
        state = self._states.get(tab)
        if state is None or not state.has_content:
            return False
        same_sort = state.current_sort == sort_key and state.current_direction == direction
        count = state.rendered_count if rendered_count is None else rendered_count
        return (
            state.current_page == page
            and state.current_search == search
            and same_sort
            and count == item_count
        )

    def mark_rendered(
        self,
        tab: str,
        *,
        page: int,
        search: str,
        item_count: int,
        sort_key: str | None = None,
        direction: str | None = None,
    ) -> None:
        self._states[tab] = TabRenderState(
            current_page=page,
            current_search=search,
            current_sort=sort_key,
            current_direction=direction,
            has_content=True,
            rendered_count=item_count,
        )

    def clear(self, tab: str) -> None:
        state = self.state(tab)
        state.has_content = False
        state.rendered_count = 0

    def clear_all(self) -> None:
        for tab in list(self._states):
            self.clear(tab)
