from .orchestrator import PivotEngine
from .state import ALLOWED_TRANSITIONS, check_transition

__all__ = ["ALLOWED_TRANSITIONS", "PivotEngine", "check_transition"]
