"""Account alerting."""
