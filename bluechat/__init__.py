"""bluechat - simulated peer-to-peer messaging over a short-range transport."""

__version__ = "0.1.0"
