"""Repository package: expose all concrete repositories from one import."""
from .application_repository import ApplicationRepository
from .reviewer_repository import ReviewerRepository
from .team_repository import TeamRepository

__all__ = [
    'ApplicationRepository',
    'ReviewerRepository',
    'TeamRepository',
]
