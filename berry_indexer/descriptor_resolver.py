"""
Artwork descriptor selection.

Nouns artwork has been served by several descriptor contracts over time. Each
one becomes authoritative at a known block; a query block maps to the latest
descriptor whose start block has been reached.
"""

import logging
from typing import Optional, Sequence, Tuple

from .config import DescriptorSource

logger = logging.getLogger(__name__)


def select_source(sources: Sequence[Tuple[str, int]], block_number: int) -> Optional[str]:
    """
    Pick the source with the largest threshold <= block_number.

    Args:
        sources: (source id, threshold block) pairs sorted ascending by threshold
        block_number: Query block

    Returns:
        Source id, or None when the block precedes every threshold
    """
    for source_id, threshold in reversed(sources):
        if threshold <= block_number:
            return source_id
    return None


class DescriptorResolver:
    """Resolves the descriptor contract responsible for a block"""

    def __init__(self, sources: Sequence[DescriptorSource]):
        self._sources = sorted(
            ((s.address, s.start_block) for s in sources),
            key=lambda pair: pair[1]
        )

    @property
    def sources(self):
        return list(self._sources)

    def resolve(self, block_number: int) -> Optional[str]:
        source = select_source(self._sources, block_number)
        if source is None:
            logger.debug(f"No descriptor available at block {block_number}")
        return source
