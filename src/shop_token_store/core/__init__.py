"""Process-level plumbing shared by the store modules."""
