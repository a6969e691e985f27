"""Use cases — thin orchestration used by the CLI and the web API."""
