"""Core configuration, logging, auth, and error handling."""
