"""Pipeline orchestration and session tracking."""
