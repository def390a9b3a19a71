"""Feature managers: each owns a slice of slash commands, components and reply topics."""
