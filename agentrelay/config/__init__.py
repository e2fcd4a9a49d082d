"""Settings and static relay configuration."""
