"""Provider-facing webhook endpoints."""
