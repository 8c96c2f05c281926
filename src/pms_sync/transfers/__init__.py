"""Deposit and withdrawal ingestion."""
