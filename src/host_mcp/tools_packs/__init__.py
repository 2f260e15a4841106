"""Built-in tools. Every submodule is scanned by the registry."""
