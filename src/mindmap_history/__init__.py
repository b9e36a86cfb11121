"""mindmap-history-engine: event-sourced undo/redo and durable history for mind map documents."""

__version__ = "0.1.0"
