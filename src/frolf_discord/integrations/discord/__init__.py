"""Discord integration: REST and gateway transport, interaction routing, replies."""
