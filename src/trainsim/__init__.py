"""Backend supervision and health-gated startup for the train simulation shell."""

__version__ = "0.1.0"
