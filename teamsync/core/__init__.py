"""Plan building, execution and orchestration."""
