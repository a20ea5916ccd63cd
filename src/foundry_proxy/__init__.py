"""Browser-facing chat proxy for a hosted Azure AI Foundry agent."""

__version__ = "0.1.0"
