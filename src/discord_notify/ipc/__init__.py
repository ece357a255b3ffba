"""Local Unix-socket IPC between the CLI and the daemon."""
