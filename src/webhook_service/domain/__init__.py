"""Domain models, events and DTOs."""
