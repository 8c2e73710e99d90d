"""
Acting identity passed into every engine operation.

The engine trusts the Actor it is given; resolving it from credentials is the
job of the HTTP layer (routes/deps.py).
"""

from dataclasses import dataclass
from typing import Optional

from .errors import InvalidInput

ROLE_ADMIN = "admin"
ROLE_STAFF = "staff"
ROLE_SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    facility_id: Optional[str]
    user_id: Optional[str] = None
    role: str = ROLE_STAFF

    @property
    def is_system(self) -> bool:
        return self.role == ROLE_SYSTEM


SYSTEM_ACTOR = Actor(facility_id=None, user_id="system", role=ROLE_SYSTEM)


def require_facility(actor: Actor) -> str:
    """Facility of a user actor, or InvalidInput if the user has none."""
    if not actor.facility_id:
        raise InvalidInput("User has no facility assigned")
    return actor.facility_id
