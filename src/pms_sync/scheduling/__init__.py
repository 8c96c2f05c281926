"""Cron scheduling, single-flight guards and the three sync services."""
