"""Client-side conversation synchronization engine for the Maathai community app."""

__version__ = "0.1.0"
