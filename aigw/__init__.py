"""Request routing, schema translation, AWS signing and token accounting for an AI gateway."""

__version__ = "0.1.0"

__all__ = [
    "backendauth",
    "bedrock",
    "config",
    "eventstream",
    "factory",
    "messages",
    "processor",
    "router",
    "server",
    "translator",
    "watcher",
]