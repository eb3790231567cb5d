"""rostersync - roster consistency and group-set synchronization engine."""

__version__ = "0.1.0"
