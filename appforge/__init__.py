"""AppForge: sandboxed execution engine for generated applications."""

__version__ = "0.1.0"
