"""HTTP surface for creating, continuing and approving plans."""
