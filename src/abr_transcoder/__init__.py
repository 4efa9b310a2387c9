"""Adaptive-bitrate HLS transcoding job pipeline."""

__version__ = "0.1.0"
