"""Core components: configuration, errors, logging, metrics and rollout."""
