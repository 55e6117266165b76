"""Version, settings, errors and the low-level building blocks of the lifecycle."""
