"""Domain entities, value objects and the error taxonomy."""
