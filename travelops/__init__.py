"""Finance ledger and group itinerary management for travel operations, stored in SQLite."""

__version__ = "0.1.0"
__all__ = ["errors", "finance", "itineraries"]