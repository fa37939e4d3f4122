"""Settings and error taxonomy shared by every package."""
