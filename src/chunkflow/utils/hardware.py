"""Hardware detection utilities for chunkflow."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class DeviceInfo:
    """Information about the device used for local transcription."""

    device: str
    name: str
    cuda_devices: int = 0
    cpu_threads: int | None = None


def _cuda_device_count() -> int:
    """Count CUDA devices visible to CTranslate2 (the faster-whisper backend)."""
    try:
        import ctranslate2

        return ctranslate2.get_cuda_device_count()
    except ImportError:
        logger.debug("ctranslate2 not installed, assuming no CUDA devices")
        return 0


def detect_device() -> str:
    """Auto-detect the device for local transcription.

    faster-whisper only distinguishes between CUDA and CPU, so Apple
    Silicon and other accelerators fall back to CPU.

    Returns:
        Device string: 'cuda' or 'cpu'.
    """
    if _cuda_device_count() > 0:
        logger.info("CUDA detected, transcribing on GPU")
        return "cuda"

    logger.info("No CUDA device found, transcribing on CPU")
    return "cpu"


def get_device_info() -> DeviceInfo:
    """Get information about the transcription device.

    Returns:
        DeviceInfo object with device details.
    """
    cuda_devices = _cuda_device_count()
    if cuda_devices > 0:
        return DeviceInfo(device="cuda", name="CUDA GPU", cuda_devices=cuda_devices)

    return DeviceInfo(device="cpu", name="CPU", cpu_threads=os.cpu_count())
