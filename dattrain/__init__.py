"""Client-side training simulation core: trainer, gradient pipeline and session registry."""

__version__ = "0.1.0"
