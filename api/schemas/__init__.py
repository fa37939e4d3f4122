"""Pipeline state, stage outputs and progress wire models."""
