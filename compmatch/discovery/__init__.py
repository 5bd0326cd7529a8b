"""Discovery runs and confirmed-match price refresh."""
