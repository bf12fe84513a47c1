"""
Agent rosters for one assignment run.

A roster is loaded the first time its segment is seen and then kept for
the rest of the run, so an agent who goes offline mid-run can still be
picked until the next run.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import DataStore
from models.schemas import AgentProfile

logger = structlog.get_logger()


class SegmentRoster:
    """Eligible agents of one segment, least recently assigned first."""

    def __init__(self, segment: str, agents: list[AgentProfile]):
        self.segment = segment
        self.agents = list(agents)
        self._cursor = 0

    def __len__(self) -> int:
        return len(self.agents)

    @property
    def cursor(self) -> int:
        return self._cursor

    def next_agent(self) -> Optional[AgentProfile]:
        """Agent at the cursor; the cursor then moves on, wrapping around."""
        if not self.agents:
            return None
        agent = self.agents[self._cursor]
        self._cursor = (self._cursor + 1) % len(self.agents)
        return agent


class RosterCache:
    """Per-run cache of SegmentRoster objects. Never shared between runs."""

    def __init__(self, store: DataStore):
        self.store = store
        self._rosters: dict[str, SegmentRoster] = {}

    async def get(self, segment: str) -> SegmentRoster:
        roster = self._rosters.get(segment)
        if roster is None:
            agents = await self.store.fetch_eligible_agents(segment)
            roster = SegmentRoster(segment, agents)
            self._rosters[segment] = roster
            logger.info("roster_loaded", segment=segment, agents=len(roster))
        return roster

    def __contains__(self, segment: str) -> bool:
        return segment in self._rosters
