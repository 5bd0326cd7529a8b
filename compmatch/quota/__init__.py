"""Per-tenant quota and scrape budget enforcement."""
