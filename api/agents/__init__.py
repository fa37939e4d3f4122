"""Pipeline stage agents."""
