"""Refreshable view state over analytics queries."""
from __future__ import annotations

import logging
from typing import Callable, Generic, Optional, TypeVar

from copilot_usage.models import AnalyticsFilter

logger = logging.getLogger("copilot_usage.analytics")

StateT = TypeVar("StateT")


class AnalyticsView(Generic[StateT]):
    """Holds the last filter and the last result of one analytics query."""

    def __init__(self, name: str, query: Callable[[AnalyticsFilter], StateT], filter: Optional[AnalyticsFilter] = None):
        self.name = name
        self._query = query
        self.filter = filter or AnalyticsFilter()
        self.state: Optional[StateT] = None

    def refresh(self, filter: Optional[AnalyticsFilter] = None) -> StateT:
        if filter is not None:
            self.filter = filter
        self.state = self._query(self.filter)
        return self.state

    def get_state(self) -> Optional[StateT]:
        return self.state
