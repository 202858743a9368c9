"""
partitionhop - coordinate hops between partitions of a shared world.

A client asks to be moved to another partition; a cooperating peer performs
the move; completion is inferred from delayed and sometimes contradictory
signals:
- Reputation cache of peers that cannot help right now
- Evidence aggregation over oracle, roster, messages and entity metadata
- Bounded retries gated on trusted user input
- Variable-rate polling of the active attempt
"""

__version__ = "0.1.0"

from partitionhop import transition, utils

__all__ = [
    "transition",
    "utils",
]
