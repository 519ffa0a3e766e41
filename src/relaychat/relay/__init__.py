"""Edge relay components."""
