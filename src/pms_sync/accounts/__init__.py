"""Account classification and persistence."""
