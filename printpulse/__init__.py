"""PrintPulse: trend-to-listing production service for print-on-demand t-shirts."""

__version__ = "0.1.0"
