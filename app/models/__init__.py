# Models package for Prophet; importing it registers every table on Base

from .job import RefreshJob
from .location import Competitor, Location
from .snapshot import Insight, Snapshot
from .tenant import Organization, OrganizationMember
from .user import User

__all__ = [
    "RefreshJob",
    "Competitor",
    "Location",
    "Insight",
    "Snapshot",
    "Organization",
    "OrganizationMember",
    "User",
]
