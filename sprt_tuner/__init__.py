"""Game-trial engine, worker pool and Texel tuner for engine parameter matches."""

__version__ = "0.1.0"
