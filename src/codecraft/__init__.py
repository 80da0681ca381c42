"""CodeCraft: chat with a coding agent that commits to GitHub."""

__version__ = "0.1.0"
