"""Runtime state, scheduling, and collaborator adapters."""
