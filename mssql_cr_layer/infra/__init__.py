"""Infrastructure: database drivers and connection pooling."""
