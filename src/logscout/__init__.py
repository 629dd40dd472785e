"""logscout - conversational log analysis over read-only shell tools."""

__version__ = "0.1.0"
