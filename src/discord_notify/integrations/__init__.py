"""Edge adapters: Discord and terminal recovery."""
