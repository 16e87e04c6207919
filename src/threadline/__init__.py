"""threadline: routes inbound channel messages to conversation threads."""

__version__ = "0.1.0"
