"""SiteScribe: archival capture of live, dynamically rendered web pages."""

__version__ = "1.0.0"
