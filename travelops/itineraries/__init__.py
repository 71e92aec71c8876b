"""Group itineraries, checkpoints, members, member forms and change events."""

__all__ = ["models", "policy", "repository", "service"]