"""Who may manage or view an itinerary."""

from __future__ import annotations

from collections.abc import Iterable

from travelops.itineraries.models import Itinerary

_ADMINISTRATOR = "administrator"


def can_manage_itinerary(user_id: str, roles: Iterable[str], itinerary: Itinerary) -> bool:
    """The organizer and administrators may manage an itinerary."""
    return user_id == itinerary.organizer_id or _ADMINISTRATOR in roles


def can_view_itinerary(
    user_id: str, roles: Iterable[str], is_member: bool, itinerary: Itinerary
) -> bool:
    """Managers and members may view an itinerary."""
    return can_manage_itinerary(user_id, roles, itinerary) or is_member