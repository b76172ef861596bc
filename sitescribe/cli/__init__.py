"""Command line interface for SiteScribe."""
