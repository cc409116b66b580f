"""Channel selection for a logical model.

Ordering is priority first. Health only breaks ties between channels of
equal priority (active before unknown before error), and insertion order
breaks whatever remains. Because every attempt outcome updates channel
status, a recovered channel moves back ahead of a failing peer without a
separate health-check loop.
"""

import logging
from typing import Iterable, List, Optional

from ..errors import NoChannelAvailableError
from .resolver import resolve_for_channel
from .store import ChannelStore
from .types import STATUS_RANK, Candidate, Channel

logger = logging.getLogger(__name__)


def _sort_key(channel: Channel):
    return (channel.priority, STATUS_RANK[channel.status], channel.seq)


class ChannelSelector:
    """Ranks eligible channels for a logical model."""

    def __init__(self, store: ChannelStore):
        self._store = store

    def eligible(
        self,
        logical_model: str,
        exclude_channel_ids: Optional[Iterable[str]] = None,
    ) -> List[Channel]:
        """Enabled, non-excluded channels serving the model, ranked."""
        excluded = set(exclude_channel_ids or ())
        channels = [
            c
            for c in self._store.get_all()
            if c.enabled and c.id not in excluded and c.models and c.serves(logical_model)
        ]
        return sorted(channels, key=_sort_key)

    def select_candidates(
        self,
        logical_model: str,
        exclude_channel_ids: Optional[Iterable[str]] = None,
    ) -> List[Candidate]:
        """Build the ordered candidate list for one logical model.

        Raises:
            NoChannelAvailableError: No channel survives the filter
        """
        excluded = list(exclude_channel_ids or ())
        ranked = self.eligible(logical_model, excluded)
        if not ranked:
            raise NoChannelAvailableError(logical_model, excluded)

        candidates = [
            Candidate(
                channel_id=channel.id,
                actual_model=resolve_for_channel(channel, logical_model).actual_model,
                logical_model=logical_model,
            )
            for channel in ranked
        ]
        logger.debug(
            f"Candidates for {logical_model}: "
            f"{[(c.channel_id, c.actual_model) for c in candidates]}"
        )
        return candidates
