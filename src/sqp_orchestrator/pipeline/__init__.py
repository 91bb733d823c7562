"""Report lifecycle orchestration, watchdog and entry points."""
