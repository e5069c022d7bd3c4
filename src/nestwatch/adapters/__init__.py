"""Storage, delivery and formatting adapters for the core ports."""
