"""Services package: expose all concrete services from one import."""
from .team_service import TeamService
from .assignment_service import AssignmentService
from .consistency_service import ConsistencyService
from .balancing import BalancingStrategy, GreedyLeastLoadedStrategy
from .succession import SuccessorStrategy, make_successor_strategy

__all__ = [
    'TeamService',
    'AssignmentService',
    'ConsistencyService',
    'BalancingStrategy',
    'GreedyLeastLoadedStrategy',
    'SuccessorStrategy',
    'make_successor_strategy',
]
