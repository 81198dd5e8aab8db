"""Task marketplace backend package."""
