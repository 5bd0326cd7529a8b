"""Competitor catalog and product page scraping."""
