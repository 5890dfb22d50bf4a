"""Two-party keyword PIR service logic: data setup, querying, answering and result upload."""

__version__ = "0.1.0"