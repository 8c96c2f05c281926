"""Currency conversion and spot quote ingestion."""
