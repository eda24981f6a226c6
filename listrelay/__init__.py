"""SharePoint list change notifications relayed to UiPath Orchestrator queues and HTTP endpoints."""

__version__ = "0.1.0"
