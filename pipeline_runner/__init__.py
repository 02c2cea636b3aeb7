"""Sequential CI/CD stage runner with guaranteed post-run notification."""

__version__ = "0.1.0"
