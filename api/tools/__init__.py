"""Graph construction, repair, reduction and context search tools."""
