"""
Institution directory — read access used by the transfer engine.
"""

from casebridge.core.exceptions import NotFoundError
from casebridge.models.institution import Institution


def get_institution(institution_id: str) -> Institution:
    """Return a live institution by id.

    Raises:
        NotFoundError: If the id does not resolve or the institution is soft-deleted.
    """
    institution = Institution.query_active().filter_by(id=institution_id).first()
    if institution is None:
        raise NotFoundError(resource="Institution", resource_id=institution_id)
    return institution
