"""Utility functions for chunkflow."""

from chunkflow.utils.hardware import detect_device, get_device_info
from chunkflow.utils.logging import get_logger

__all__ = ["detect_device", "get_device_info", "get_logger"]
