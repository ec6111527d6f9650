"""Session event types and the notifier that fans them out."""
