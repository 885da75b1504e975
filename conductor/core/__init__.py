"""Runtime plumbing: planning model, event bus, continuations, activity sink."""
