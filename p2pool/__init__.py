"""Share chain, ckpool messages and bitcoin block building for a mining pool."""

__version__ = "0.1.0"