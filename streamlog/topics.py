"""Topic metadata lookup."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set


@dataclass
class TopicHandler:
    """Provides information about topics; topics are created on demand."""

    config: Any = None
    _info: Dict[str, Any] = field(default_factory=dict, init=False, repr=False)
    _seen: Set[str] = field(default_factory=set, init=False, repr=False)

    def get(self, topic: str) -> Optional[Any]:
        """Detailed information kept for the topic, or ``None`` when there is none."""
        return self._info.get(topic)

    def exists(self, topic: str) -> bool:
        """Whether the topic exists; any topic asked about is created on demand."""
        self._seen.add(topic)
        return topic in self._seen