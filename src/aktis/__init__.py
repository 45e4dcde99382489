"""Local collector for Jira and Confluence data captured through a browser session."""

__version__ = "0.1.0"
