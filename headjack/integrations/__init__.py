"""Protocol integrations. The engine only depends on integrations.base."""
