"""Position Guard: code-level stop-loss and trailing-stop protection."""
__version__ = "1.0.0"
