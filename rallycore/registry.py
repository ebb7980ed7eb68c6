"""
registry.py — Per-rally competitor lookup.

Keyed by competitor id, which stays stable across stages; car numbers are
unique within the rally and drive every tie-break.
"""

from __future__ import annotations

from typing import Iterator, Optional

from rallycore.errors import DuplicateCarNumber
from rallycore.models import Competitor


class CompetitorRegistry:
    """Competitors of one rally, iterated in ascending car-number order."""

    def __init__(self, competitors: Optional[list[Competitor]] = None):
        self._by_id: dict[str, Competitor] = {}
        self._by_number: dict[int, str] = {}
        for competitor in competitors or ():
            self.register(competitor)

    def register(self, competitor: Competitor) -> bool:
        """Insert or replace a competitor. Returns True if anything changed."""
        holder = self._by_number.get(competitor.car_number)
        if holder is not None and holder != competitor.competitor_id:
            raise DuplicateCarNumber(competitor.car_number, holder)

        existing = self._by_id.get(competitor.competitor_id)
        if existing == competitor:
            return False
        if existing is not None:
            del self._by_number[existing.car_number]

        self._by_id[competitor.competitor_id] = competitor
        self._by_number[competitor.car_number] = competitor.competitor_id
        return True

    def get(self, competitor_id: str) -> Optional[Competitor]:
        return self._by_id.get(competitor_id)

    def by_car_number(self, car_number: int) -> Optional[Competitor]:
        competitor_id = self._by_number.get(car_number)
        return self._by_id.get(competitor_id) if competitor_id else None

    def copy(self) -> CompetitorRegistry:
        clone = CompetitorRegistry()
        clone._by_id = dict(self._by_id)
        clone._by_number = dict(self._by_number)
        return clone

    def __contains__(self, competitor_id: object) -> bool:
        return competitor_id in self._by_id

    def __iter__(self) -> Iterator[Competitor]:
        return iter(sorted(self._by_id.values(), key=lambda c: c.car_number))

    def __len__(self) -> int:
        return len(self._by_id)
