"""Infrastructure layer: configuration, settings and audit logging."""
