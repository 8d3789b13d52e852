"""Service layer for the endless discovery queue."""
