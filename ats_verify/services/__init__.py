"""Domain services layered over the repositories."""
