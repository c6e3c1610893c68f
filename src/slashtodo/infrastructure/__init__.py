"""Event store, dispatcher, and repository."""
