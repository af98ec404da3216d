from .runner import ResearchRunner
from .utils import log_stage_transition

__all__ = ['ResearchRunner', 'log_stage_transition']
