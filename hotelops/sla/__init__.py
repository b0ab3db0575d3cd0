from .policies import SLAPolicyRepository
from .timer import SLAClockState, SLAPolicy, SLAReading, SLAState

__all__ = [
    "SLAClockState",
    "SLAPolicy",
    "SLAPolicyRepository",
    "SLAReading",
    "SLAState",
]
