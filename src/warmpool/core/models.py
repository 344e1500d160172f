"""
Pool Data Models
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class PoolStatus:
    """Snapshot of the warm pool"""

    target: int
    ready: int
    assigned: int
    warming: bool = False
    ready_ids: List[str] = field(default_factory=list)

    @property
    def missing(self) -> int:
        """Workers still needed to reach the target"""
        return max(self.target - self.ready, 0)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging"""
        return {
            "target": self.target,
            "ready": self.ready,
            "assigned": self.assigned,
            "warming": self.warming,
            "ready_ids": list(self.ready_ids),
        }
