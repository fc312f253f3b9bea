"""
Caller identity passed into every service call.

The identity is resolved once per request by the identity middleware and
handed to services as an explicit argument; services never read it from
``flask.g``.
"""

from dataclasses import dataclass

ROLE_SUPER_ADMIN = "super_admin"
ROLE_SCHOOL_ADMIN = "school_admin"
ROLE_TUTOR_CENTRE_ADMIN = "tutor_centre_admin"

ROLES = {ROLE_SUPER_ADMIN, ROLE_SCHOOL_ADMIN, ROLE_TUTOR_CENTRE_ADMIN}


@dataclass(frozen=True)
class IdentityContext:
    """Who is calling: user id, home institution (None for platform staff) and role."""

    user_id: str
    institution_id: str | None
    role: str

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown role '{self.role}'. Allowed: {', '.join(sorted(ROLES))}")
        if self.role != ROLE_SUPER_ADMIN and not self.institution_id:
            raise ValueError(f"Role '{self.role}' requires an institution_id")

    @property
    def is_super_admin(self) -> bool:
        return self.role == ROLE_SUPER_ADMIN

    def belongs_to(self, institution_id: str | None) -> bool:
        """True if the caller acts for ``institution_id`` (super-admins act for all)."""
        if self.is_super_admin:
            return True
        return self.institution_id is not None and self.institution_id == institution_id
