"""Knowledge graph and persistence models."""
