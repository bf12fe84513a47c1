"""
Round-robin conversation assignment.

Provides:
- RosterCache / SegmentRoster: run-scoped agent rosters with a rotating cursor
- RoundRobinScheduler: assigns unassigned conversations under a global run lock
"""
from assignment.roster import RosterCache, SegmentRoster
from assignment.scheduler import RoundRobinScheduler

__all__ = ["RosterCache", "SegmentRoster", "RoundRobinScheduler"]
