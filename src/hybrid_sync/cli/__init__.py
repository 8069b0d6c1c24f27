"""Command-line tools for inspecting and synchronizing a local store."""
