"""agentgate: approval lifecycle, expiration sweep and step output resolution for agent plans."""

__version__ = "0.1.0"
