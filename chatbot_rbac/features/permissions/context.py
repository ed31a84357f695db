"""
Who is performing a mutation, and from where.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class ActorContext:
    """
    The actor behind an administrative operation.

    ``elevated`` is the result of the external privilege check (see
    ``dependencies.has_elevated_privilege``); services only read it.
    """
    actor_id: Optional[str] = None
    organization_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    elevated: bool = False

    @classmethod
    def system(cls) -> "ActorContext":
        """Actor used by seeding and maintenance scripts."""
        return cls(actor_id=None, elevated=True, user_agent="system")
